"""Render OCR pages as prompt text.

The enhanced format keeps a coarse y coordinate on every line so the model
can quote markers that coordinate resolution can find again::

    [Y:240] DISCHARGE (x:120) | SUMMARY (x:410)
"""

from encounterscope.models import OCRPage, OCRWord

LINE_Y_TOLERANCE = 10
WORD_GAP_PX = 20


def group_words_into_lines(words: list[OCRWord], tolerance: float = LINE_Y_TOLERANCE) -> list[list[OCRWord]]:
    """Group words whose tops fall within ``tolerance`` pixels into lines."""
    lines: list[list[OCRWord]] = []
    for word in sorted(words, key=lambda w: (w.bounding_poly.top, w.bounding_poly.left)):
        if lines and abs(word.bounding_poly.top - lines[-1][0].bounding_poly.top) <= tolerance:
            lines[-1].append(word)
        else:
            lines.append([word])
    return [sorted(line, key=lambda w: w.bounding_poly.left) for line in lines]


def _render_line(line: list[OCRWord]) -> str:
    parts = []
    previous_right = None
    for word in line:
        box = word.bounding_poly
        if previous_right is not None and box.left - previous_right > WORD_GAP_PX:
            parts.append("|")
        parts.append(f"{word.text} (x:{box.left:.0f})")
        previous_right = box.right
    return f"[Y:{line[0].bounding_poly.top:.0f}] " + " ".join(parts)


def format_page_text(page: OCRPage, enhanced: bool = True) -> str:
    """Page text for the prompt; plain text when there are no word boxes."""
    words = [w for w in page.iter_words() if w.text.strip()]
    if not enhanced or not words:
        return page.plain_text
    return "\n".join(_render_line(line) for line in group_words_into_lines(words))
