import re

STRING_TOKEN = "STR"
NUMBER_TOKEN = "NUM"

_TOKEN_RE = re.compile(
    r"""
    (?P<comment>\#[^\n]*)
  | (?P<string>[rRbBuUfF]{0,2}(?:'''[\s\S]*?'''|\"\"\"[\s\S]*?\"\"\"|'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*"))
  | (?P<number>\d[\d_]*(?:\.\d*)?(?:[eE][+-]?\d+)?[jJ]?|\.\d+(?:[eE][+-]?\d+)?[jJ]?)
  | (?P<name>[^\W\d]\w*)
  | (?P<op>\*\*=|//=|>>=|<<=|->|:=|\*\*|//|==|!=|<=|>=|<<|>>|[-+*/%&|^@]=|[-+*/%&|^~<>=!@.,:;()\[\]{}])
  | (?P<space>\s+)
  | (?P<other>.)
    """,
    re.VERBOSE,
)


def tokenize(code: str, normalize: bool = True) -> list[str]:
    """Разбить исходный код на токены.

    Комментарии и пробелы отбрасываются всегда. При normalize=True строковые
    и числовые литералы заменяются на STR / NUM, чтобы правка констант не
    влияла на оценку. Ключевые слова и идентификаторы остаются как есть.
    """
    if not code:
        return []

    tokens: list[str] = []
    for match in _TOKEN_RE.finditer(code):
        kind = match.lastgroup
        if kind in ("comment", "space"):
            continue
        value = match.group()
        if normalize and kind == "string":
            value = STRING_TOKEN
        elif normalize and kind == "number":
            value = NUMBER_TOKEN
        tokens.append(value)
    return tokens


def significant_lines(code: str) -> list[tuple[int, str]]:
    """Непустые строки без комментариев и отступов, с исходными номерами (с нуля)."""
    result = []
    for index, line in enumerate(code.splitlines()):
        text = line.strip()
        # строки с кавычками не режем: '#' может быть внутри литерала
        if "#" in text and "'" not in text and '"' not in text:
            text = text.split("#", 1)[0].rstrip()
        if text:
            result.append((index, text))
    return result
