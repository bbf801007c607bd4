"""Tests for picking generated test code out of model replies (`extraction.extract_test_code`)."""
from extraction import extract_test_code, find_fenced_blocks


def _lines(prefix: str, n: int) -> str:
    return "\n".join(f"{prefix}{i}" for i in range(n))


def test_single_typescript_block_is_returned_without_fences():
    raw = "```typescript\ndescribe('x', () => { it('works', () => {}) })\n```"
    assert extract_test_code(raw, "calc.ts") == "describe('x', () => { it('works', () => {}) })"


def test_language_tag_outweighs_length():
    python_block = "import unittest\n" + _lines("x = ", 79)
    untagged_block = _lines("y = ", 120)
    raw = f"Here are the tests:\n```python\n{python_block}\n```\n\nAnd more:\n```\n{untagged_block}\n```\n"

    assert extract_test_code(raw, "foo.py") == python_block


def test_fence_aliases_count_as_a_language_match():
    raw = "```js\nlong()\nlong()\nlong()\n```\n```py\nimport unittest\n```"
    assert extract_test_code(raw, "foo.py") == "import unittest"


def test_framework_idioms_break_ties_between_same_language_blocks():
    helper = _lines("helper_value_", 10)
    tests = (
        "import unittest\n"
        "class TestCalc(unittest.TestCase):\n"
        "    def test_add(self):\n"
        "        self.assertEqual(1 + 1, 2)"
    )
    raw = f"```python\n{helper}\n```\n```python\n{tests}\n```"

    assert extract_test_code(raw, "calc.py") == tests


def test_equal_scores_keep_the_first_block():
    raw = "```go\nfirst()\n```\n```go\nsecond()\n```"
    assert extract_test_code(raw, "main.go") == "first()"


def test_unknown_language_prefers_the_longest_block():
    raw = "```\nshort\n```\n```\none\ntwo\nthree\n```"
    assert extract_test_code(raw, "script.lua") == "one\ntwo\nthree"


def test_no_fences_falls_back_to_markdown_line_filter():
    raw = (
        "# Unit tests\n"
        "- covers the happy path\n"
        "> note\n"
        "1. first\n"
        "---\n"
        "import unittest\n"
        "\n"
        "class TestX(unittest.TestCase):\n"
        "    pass\n"
    )
    assert extract_test_code(raw, "x.py") == "import unittest\n\nclass TestX(unittest.TestCase):\n    pass"


def test_truncated_reply_still_yields_the_open_block():
    raw = "Sure!\n```python\nimport unittest\n\nclass TestY(unittest.TestCase):\n    def test_y(self):\n"
    blocks = find_fenced_blocks(raw)

    assert [b.source for b in blocks] == ["unclosed_fence"]
    assert extract_test_code(raw, "y.py").startswith("import unittest")


def test_empty_reply_is_empty_string():
    assert extract_test_code("", "a.py") == ""
    assert extract_test_code(None, "a.py") == ""
