"""Inference gateway interface."""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field


class InferenceRequest(BaseModel):
    prompt_text: str
    max_output_tokens: int = Field(default=8192, gt=0)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)


class InferenceResponse(BaseModel):
    """Raw JSON text plus token and cost accounting."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    model: str = ""


class ModelPricing(BaseModel):
    """Per-million-token prices."""

    input_per_million: float = 0.0
    output_per_million: float = 0.0

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self.input_per_million
            + output_tokens / 1_000_000 * self.output_per_million
        )


class InferenceGateway(ABC):
    """
    One-call text inference service.

    Implementations raise subclasses of ``InferenceError`` and leave retry
    decisions to the caller.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        ...

    async def aclose(self) -> None:
        """Release network resources."""
