from proofsmith.latex import lint_latex_markdown, normalize_math_delimiters, trim_to_line_count


def test_balanced_markdown_has_no_warnings() -> None:
    markdown = "Let $x > 0$. Then\n\n$$x^2 > 0$$\n\nand \\[ y = x \\] holds."

    assert lint_latex_markdown(markdown) == []


def test_odd_display_delimiters_are_reported() -> None:
    warnings = lint_latex_markdown("$$a + b = c")

    assert "Unbalanced $$ display math delimiters." in warnings


def test_odd_inline_delimiters_are_reported() -> None:
    assert lint_latex_markdown("Let $x be positive.") == ["Unbalanced $ inline math delimiters."]


def test_escaped_dollar_is_not_a_delimiter() -> None:
    assert lint_latex_markdown("It costs \\$5 and $x$ is free.") == []


def test_mismatched_brackets_are_reported() -> None:
    warnings = lint_latex_markdown("\\[ x = 1")

    assert warnings == ["Unbalanced \\[ and \\] delimiters."]


def test_unsupported_environments_are_reported() -> None:
    markdown = "\\begin{tikzpicture}\\end{tikzpicture}\n\\begin{lstlisting}x\\end{lstlisting}"

    warnings = lint_latex_markdown(markdown)

    assert "KaTeX does not support TikZ environments." in warnings
    assert "KaTeX does not support lstlisting environments." in warnings


def test_normalize_math_delimiters_rewrites_bracket_forms() -> None:
    assert normalize_math_delimiters("\\(a\\) and \\[b\\]") == "$a$ and $$b$$"


def test_trim_to_line_count_collapses_blank_runs() -> None:
    text = "one\n\n\n\ntwo  \nthree\nfour"

    assert trim_to_line_count(text, 3) == "one\n\ntwo"
