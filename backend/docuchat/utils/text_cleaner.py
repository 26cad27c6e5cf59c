"""Text cleaning and normalization utilities."""
import re


def clean_text(text: str) -> str:
    """
    Clean and normalize extracted text while keeping paragraph structure.

    Args:
        text: Raw text to clean

    Returns:
        Cleaned text with normalized whitespace and at most one blank line
        between paragraphs
    """
    # Normalize line breaks; form feeds mark page boundaries
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\f", "\n\n")

    # Remove special control characters but keep newlines and tabs
    text = re.sub(r"[\x00-\x08\x0b-\x0c\x0e-\x1f\x7f]", "", text)

    # Collapse horizontal whitespace and trim it around line breaks
    text = re.sub(r"[ \t\u00a0]+", " ", text)
    text = re.sub(r" ?\n ?", "\n", text)

    # Remove excessive newlines (more than 2 consecutive)
    text = re.sub(r"\n{3,}", "\n\n", text)

    return text.strip()


def sanitize_for_context(text: str, max_length: int = 10000) -> str:
    """
    Make stored chunk text safe to embed inside a prompt.

    Args:
        text: Chunk content
        max_length: Maximum number of characters kept

    Returns:
        Text without angle brackets or NUL characters, truncated
    """
    text = re.sub(r"[<>]", "", text).replace("\0", "")
    return text[:max_length].strip()
