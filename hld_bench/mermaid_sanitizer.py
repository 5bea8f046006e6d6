# hld_bench/mermaid_sanitizer.py
"""
Textual repair of Mermaid sources produced by language models.

Every stage is a pure str -> str function that leaves input it does not
recognize untouched. `sanitize_mermaid` runs them in the order of
MERMAID_REPAIR_STAGES and never raises: a source that cannot be fully
repaired is still returned so it can be written out and inspected.
"""
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple


logger = logging.getLogger("hld_bench")

SUBGRAPH_ID_MAX_LEN = 30
# Upper bound on full ordered passes; a later stage can expose work for an earlier one.
MAX_PIPELINE_PASSES = 4

_LEADING_FENCE_RE = re.compile(r"\A\s*```mermaid[ \t]*\n", flags=re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\n```\s*\Z")

_TRAILING_MARKS_RE = re.compile(r"[\s%]+\Z")
_TRAILING_COMMENT_LINE_RE = re.compile(r"(?:\A|\n)[ \t]*%%[^\n]*\Z")

_QUOTED_LABEL_RE = re.compile(r'\["([^"]*?)"\]')
_UNQUOTED_PAREN_LABEL_RE = re.compile(r'(?<=\w)\[(?![\[("])([^\]"\n]*\([^\]"\n]*\)[^\]"\n]*)\]')
_SUBGRAPH_TITLE_RE = re.compile(r"^([ \t]*)subgraph[ \t]+((?:(?!\[)[^\n])*\([^)\n]*\)[^\n]*?)[ \t]*$", flags=re.MULTILINE)
_ESCAPED_QUOTE_RE = re.compile(r'\\\\?"')

_SEQUENCE_HEADER_RE = re.compile(r"^[ \t]*sequenceDiagram\b[^\n]*(?:\n|\Z)", flags=re.MULTILINE)
_DECLARED_PARTICIPANT_RE = re.compile(r"^[ \t]*(?:participant|actor)[ \t]+(\S+)", flags=re.MULTILINE)
_NON_ARROW_LINE_RE = re.compile(r"^[ \t]*(?:(?:participant|actor|note)\b|%%)", flags=re.IGNORECASE)
# Longest form first at every position: `<<-->>`, `-->>`, `-->`, `--x`, `--)` and their single-dash variants.
_ARROW_TOKEN_RE = re.compile(r"<<-{1,2}>>|-{1,2}(?:>>|>)|-{1,2}[x)]")
_NON_IDENTIFIER_CHAR_RE = re.compile(r"[^A-Za-z0-9_]")


# -----------------------
# Stages
# -----------------------

def normalize_escapes(src: str) -> str:
    """Literal `\\n` becomes a line break, literal `\\t` two spaces."""
    return src.replace("\\n", "\n").replace("\\t", "  ")


def strip_code_fences(src: str) -> str:
    src = _LEADING_FENCE_RE.sub("", src, count=1)
    return _TRAILING_FENCE_RE.sub("", src, count=1)


def strip_trailing_comments(src: str) -> str:
    """
    Drops trailing whitespace, stray `%` runs and `%%` comment lines after
    the last statement. Earlier lines are never touched.
    """
    while True:
        stripped = _TRAILING_MARKS_RE.sub("", src)
        stripped = _TRAILING_COMMENT_LINE_RE.sub("", stripped)
        if stripped == src:
            return src
        src = stripped


def collapse_label_newlines(src: str) -> str:
    def repl(m):
        inner = re.sub(r"\n\s*", " ", m.group(1)).strip()
        return f'["{inner}"]'

    return _QUOTED_LABEL_RE.sub(repl, src)


def replace_label_ampersands(src: str) -> str:
    return _QUOTED_LABEL_RE.sub(lambda m: '["' + m.group(1).replace("&", "and") + '"]', src)


def quote_parenthesized_labels(src: str) -> str:
    """
    A[Load Balancer (Nginx)] -> A["Load Balancer (Nginx)"]

    Cylinder `[(...)]`, subroutine `[[...]]` and already quoted labels are left alone.
    """
    return _UNQUOTED_PAREN_LABEL_RE.sub(lambda m: f'["{m.group(1)}"]', src)


def _subgraph_safe_id(title: str) -> str:
    safe_id = re.sub(r"[^a-zA-Z0-9]", "", title)[:SUBGRAPH_ID_MAX_LEN]
    return safe_id or "Subgraph"


def repair_subgraph_titles(src: str) -> str:
    """
    subgraph Some Title (Details) -> subgraph SomeTitleDetails["Some Title (Details)"]
    """
    def repl(m):
        indent, title = m.group(1), m.group(2).strip()
        if len(title) >= 2 and title[0] == title[-1] and title[0] in "\"'":
            title = title[1:-1].strip()
        title = title.replace('"', "'")
        return f'{indent}subgraph {_subgraph_safe_id(title)}["{title}"]'

    return _SUBGRAPH_TITLE_RE.sub(repl, src)


def normalize_escaped_quotes(src: str) -> str:
    r"""`\"` and `\\"` become a plain single quote."""
    return _ESCAPED_QUOTE_RE.sub("'", src)


def _find_undeclared_participants(src: str, declared) -> Dict[str, str]:
    undeclared: Dict[str, str] = {}

    def consider(raw: str):
        raw = raw.strip()
        if raw[:1] in "+-":
            raw = raw[1:].strip()
        if not raw or raw in declared or raw in undeclared:
            return
        if _NON_IDENTIFIER_CHAR_RE.search(raw):
            undeclared[raw] = re.sub(r"[^a-zA-Z0-9]", "_", raw)

    for line in src.split("\n"):
        if _NON_ARROW_LINE_RE.match(line):
            continue
        arrow = _split_arrow_line(line)
        if arrow is None:
            continue
        consider(arrow[0])
        consider(arrow[1])
    return undeclared


def _split_arrow_line(line: str) -> Optional[Tuple[str, str]]:
    """
    `A ->> +B: text` -> ("A", "+B"), None when the line is no message.

    Endpoints may themselves contain `-x` (`Auth-xyz`), so a `>`-headed
    arrow wins over a cross or async one when the line holds both.
    """
    head, colon, _text = line.partition(":")
    if not colon:
        return None
    tokens = list(_ARROW_TOKEN_RE.finditer(head))
    if not tokens:
        return None
    arrow = next((t for t in tokens if ">" in t.group(0)), tokens[0])
    source, target = head[:arrow.start()].strip(), head[arrow.end():].strip()
    if not source or not target:
        return None
    return source, target


def declare_sequence_participants(src: str) -> str:
    """
    Sequence diagrams only. Arrow endpoints such as `User Service` are not
    legal identifiers unless declared; each one gets a safe id, every textual
    occurrence is rewritten to it, and a

        participant User_Service as "User Service"

    line is inserted right after the header, in first-discovery order.

    The rewrite is a plain global replacement: a raw name recurring inside
    unrelated text (a message or a label) is rewritten as well.
    """
    header = _SEQUENCE_HEADER_RE.search(src)
    if not header:
        return src

    declared = set(_DECLARED_PARTICIPANT_RE.findall(src))
    undeclared = _find_undeclared_participants(src, declared)
    if not undeclared:
        return src

    head, body = src[:header.end()], src[header.end():]
    # Longest first so a name is never split by a shorter one it contains.
    for raw in sorted(undeclared, key=len, reverse=True):
        body = body.replace(raw, undeclared[raw])

    declarations = [f'    participant {safe_id} as "{raw}"' for raw, safe_id in undeclared.items()]
    if not head.endswith("\n"):
        head += "\n"
    return head + "\n".join(declarations) + ("\n" + body if body else "")


MERMAID_REPAIR_STAGES: List[Tuple[str, Callable[[str], str]]] = [
    ("normalize_escapes", normalize_escapes),
    ("strip_code_fences", strip_code_fences),
    ("strip_trailing_comments", strip_trailing_comments),
    ("collapse_label_newlines", collapse_label_newlines),
    ("replace_label_ampersands", replace_label_ampersands),
    ("quote_parenthesized_labels", quote_parenthesized_labels),
    ("repair_subgraph_titles", repair_subgraph_titles),
    ("normalize_escaped_quotes", normalize_escaped_quotes),
    ("declare_sequence_participants", declare_sequence_participants),
]


def _run_stages(src: str) -> str:
    for name, stage in MERMAID_REPAIR_STAGES:
        try:
            src = stage(src)
        except Exception as e:
            logger.warning(f"sanitize_mermaid: stage '{name}' skipped: {e}")
    return src


def sanitize_mermaid(src) -> str:
    """
    Runs every repair stage in order. The ordered pass is repeated until the
    text stops changing, so sanitize_mermaid(sanitize_mermaid(s)) == sanitize_mermaid(s).
    """
    if src is None:
        return ""
    if not isinstance(src, str):
        src = str(src)

    for _ in range(MAX_PIPELINE_PASSES):
        repaired = _run_stages(src)
        if repaired == src:
            break
        src = repaired
    return src
