"""Inference gateway implementations."""

from .base import InferenceGateway, InferenceRequest, InferenceResponse, ModelPricing
from .ollama import OllamaGateway
from .retry import chunk_retrying, is_retryable

__all__ = [
    "InferenceGateway",
    "InferenceRequest",
    "InferenceResponse",
    "ModelPricing",
    "OllamaGateway",
    "chunk_retrying",
    "is_retryable",
]
