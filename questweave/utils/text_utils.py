def sanitize_text(value: str | None) -> str | None:
    """Remove characters that cannot be encoded in UTF-8."""
    if value is None:
        return None
    return value.encode("utf-8", "ignore").decode("utf-8", "ignore")


def format_progress(progress: float) -> str:
    """Format a 0..1 progress value as a percentage, dropping useless decimals."""
    percentage = progress * 100
    if percentage == int(percentage):
        return f"{int(percentage)}%"
    return f"{percentage:.1f}%"


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to specified length with ellipsis."""
    if not text:
        return ""

    if len(text) <= max_length:
        return text

    return text[:max_length-3] + "..."
