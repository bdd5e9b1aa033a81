from __future__ import annotations

import re

DISPLAY_DELIMITER = re.compile(r"\$\$")
INLINE_DELIMITER = re.compile(r"(?:^|[^\\])\$")
LEFT_BRACKET = re.compile(r"\\\[")
RIGHT_BRACKET = re.compile(r"\\\]")
UNSUPPORTED_ENVIRONMENTS = {
    "tikzpicture": "KaTeX does not support TikZ environments.",
    "lstlisting": "KaTeX does not support lstlisting environments.",
}


def _count(pattern: re.Pattern[str], source: str) -> int:
    return len(pattern.findall(source))


def lint_latex_markdown(markdown: str) -> list[str]:
    """Return renderer-compatibility warnings for a markdown draft."""
    warnings: list[str] = []

    if _count(DISPLAY_DELIMITER, markdown) % 2 != 0:
        warnings.append("Unbalanced $$ display math delimiters.")

    if _count(INLINE_DELIMITER, markdown) % 2 != 0:
        warnings.append("Unbalanced $ inline math delimiters.")

    if _count(LEFT_BRACKET, markdown) != _count(RIGHT_BRACKET, markdown):
        warnings.append("Unbalanced \\[ and \\] delimiters.")

    for environment, message in UNSUPPORTED_ENVIRONMENTS.items():
        if f"\\begin{{{environment}}}" in markdown:
            warnings.append(message)

    return warnings


def normalize_math_delimiters(markdown: str) -> str:
    return (
        markdown.replace("\\[", "$$")
        .replace("\\]", "$$")
        .replace("\\(", "$")
        .replace("\\)", "$")
    )


def trim_to_line_count(text: str, max_lines: int) -> str:
    lines = [line.rstrip() for line in text.splitlines()]
    kept: list[str] = []
    for index, line in enumerate(lines):
        if line or (index > 0 and lines[index - 1]):
            kept.append(line)
    return "\n".join(kept[:max_lines]).strip()
