"""Word-level OCR input models.

Pages arrive as blocks -> paragraphs -> words. Each word carries a
quadrilateral bounding polygon in page pixel coordinates, vertices ordered
top-left, top-right, bottom-right, bottom-left.
"""

from typing import Iterator, Optional

from pydantic import BaseModel, Field


class OCRVertex(BaseModel):
    x: float = 0.0
    y: float = 0.0


class OCRBoundingPoly(BaseModel):
    """Quadrilateral word box."""

    vertices: list[OCRVertex] = Field(default_factory=list)

    @property
    def top(self) -> float:
        if len(self.vertices) >= 2:
            return min(self.vertices[0].y, self.vertices[1].y)
        return min((v.y for v in self.vertices), default=0.0)

    @property
    def bottom(self) -> float:
        if len(self.vertices) >= 4:
            return max(self.vertices[2].y, self.vertices[3].y)
        return max((v.y for v in self.vertices), default=0.0)

    @property
    def left(self) -> float:
        return min((v.x for v in self.vertices), default=0.0)

    @property
    def right(self) -> float:
        return max((v.x for v in self.vertices), default=0.0)

    @property
    def center_y(self) -> float:
        return (self.top + self.bottom) / 2


class OCRWord(BaseModel):
    """Single recognised word."""

    text: str
    bounding_poly: OCRBoundingPoly = Field(default_factory=OCRBoundingPoly)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class OCRParagraph(BaseModel):
    words: list[OCRWord] = Field(default_factory=list)


class OCRBlock(BaseModel):
    paragraphs: list[OCRParagraph] = Field(default_factory=list)


class OCRPage(BaseModel):
    """
    One OCR'd page.

    ``text`` is the provider's full-page transcription when available; the
    word list is the fallback and the source of coordinates.
    """

    page_number: int = Field(..., ge=1, description="1-indexed page number")
    width: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    blocks: list[OCRBlock] = Field(default_factory=list)
    text: Optional[str] = None

    @property
    def words(self) -> list[OCRWord]:
        """All words in reading order."""
        return list(self.iter_words())

    def iter_words(self) -> Iterator[OCRWord]:
        for block in self.blocks:
            for paragraph in block.paragraphs:
                yield from paragraph.words

    @property
    def plain_text(self) -> str:
        if self.text:
            return self.text
        return " ".join(word.text for word in self.iter_words())

    @property
    def effective_height(self) -> float:
        """Declared page height, else the lowest word bottom."""
        if self.height:
            return self.height
        return max((w.bounding_poly.bottom for w in self.iter_words()), default=0.0)
