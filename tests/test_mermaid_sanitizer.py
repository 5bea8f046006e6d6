"""
Tests for the Mermaid repair pipeline, stage by stage and end to end.
"""

import pytest

from hld_bench.mermaid_sanitizer import (
    MERMAID_REPAIR_STAGES,
    collapse_label_newlines,
    declare_sequence_participants,
    normalize_escaped_quotes,
    normalize_escapes,
    quote_parenthesized_labels,
    replace_label_ampersands,
    repair_subgraph_titles,
    sanitize_mermaid,
    strip_code_fences,
    strip_trailing_comments,
)


CLEAN_FLOWCHART = 'flowchart TD\n    A["Load Balancer (Nginx)"] --> B[API]\n    B --> C[(Postgres)]'
CLEAN_SEQUENCE = "sequenceDiagram\n    participant U as User\n    U->>API: login\n    API-->>U: token"

MESSY_SOURCES = [
    "flowchart TD\\n  A[Load Balancer (Nginx)] --> B[\"Cache & DB\"]\\n%%",
    "```mermaid\ngraph TD\nA[\"multi\n   line\"] --> B\n```",
    "graph TD\nsubgraph Data Layer (Primary)\nA[x]\nend\n%% trailing note",
    'graph TD\nA["say \\"hi\\" & bye"] --> B[Svc (v2)]',
    "sequenceDiagram\nUser Service->>Auth Service: login\nAuth Service-->>User Service: ok",
    "sequenceDiagram\n  participant DB\n  Web App->>+DB: query\n  DB-->>-Web App: rows",
    "sequenceDiagram\nAuth-xyz->>Order Service: place\nWeb App-xDB: drop\nWeb App<<->>Auth-xyz: sync",
    CLEAN_FLOWCHART,
    CLEAN_SEQUENCE,
    "",
    "not a diagram at all",
]


class TestStages:

    def test_normalize_escapes(self):
        assert normalize_escapes("graph TD\\nA-->B\\tC") == "graph TD\nA-->B  C"

    def test_strip_code_fences(self):
        assert strip_code_fences("```mermaid\ngraph TD\nA-->B\n```") == "graph TD\nA-->B"
        assert strip_code_fences("```MERMAID\ngraph TD\n```\n") == "graph TD"

    def test_strip_trailing_percent(self):
        assert strip_trailing_comments("graph TD\nA-->B\n%%  \n") == "graph TD\nA-->B"
        assert strip_trailing_comments("graph TD\nA-->B%") == "graph TD\nA-->B"

    def test_strip_trailing_comment_line(self):
        assert strip_trailing_comments("graph TD\nA-->B\n%% note") == "graph TD\nA-->B"
        assert strip_trailing_comments("graph TD\nA-->B\n%% one\n%% two\n") == "graph TD\nA-->B"

    def test_strip_trailing_keeps_inner_comments(self):
        src = "graph TD\n%% inner\nA-->B"
        assert strip_trailing_comments(src) == src

    def test_collapse_label_newlines(self):
        assert collapse_label_newlines('A["Load\n    Balancer"] --> B') == 'A["Load Balancer"] --> B'

    def test_replace_label_ampersands(self):
        assert replace_label_ampersands('A["Cache & DB"] --> B[X & Y]') == 'A["Cache and DB"] --> B[X & Y]'

    def test_quote_parenthesized_labels(self):
        src = "flowchart TD\nA[Load Balancer (Nginx)]"
        assert quote_parenthesized_labels(src) == 'flowchart TD\nA["Load Balancer (Nginx)"]'

    @pytest.mark.parametrize("src", [
        "A[(Database)]",
        "A[[Subroutine (x)]]",
        'A["Already (quoted)"]',
        "A[No parens]",
    ])
    def test_quote_parenthesized_labels_leaves_other_shapes(self, src):
        assert quote_parenthesized_labels(src) == src

    def test_repair_subgraph_titles(self):
        src = "graph TD\n  subgraph Data Layer (Primary)\n  A\n  end"
        assert repair_subgraph_titles(src) == 'graph TD\n  subgraph DataLayerPrimary["Data Layer (Primary)"]\n  A\n  end'

    def test_repair_subgraph_titles_truncates_id(self):
        title = "An Extremely Long Subgraph Title For Testing (Yes)"
        out = repair_subgraph_titles(f"subgraph {title}")
        assert out == f'subgraph AnExtremelyLongSubgraphTitleFo["{title}"]'

    def test_repair_subgraph_titles_leaves_declared_form(self):
        src = 'subgraph DL["Data Layer (Primary)"]\nsubgraph Plain'
        assert repair_subgraph_titles(src) == src

    def test_normalize_escaped_quotes(self):
        assert normalize_escaped_quotes('A["say \\"hi\\""]') == "A[\"say 'hi'\"]"

    def test_declare_participants(self):
        src = "sequenceDiagram\nUser Service->>Auth Service: login"
        assert declare_sequence_participants(src) == (
            "sequenceDiagram\n"
            '    participant User_Service as "User Service"\n'
            '    participant Auth_Service as "Auth Service"\n'
            "User_Service->>Auth_Service: login"
        )

    def test_declare_participants_skips_declared_and_flowcharts(self):
        assert declare_sequence_participants(CLEAN_SEQUENCE) == CLEAN_SEQUENCE
        flow = "flowchart LR\nUser Service->>Auth Service: login"
        assert declare_sequence_participants(flow) == flow

    def test_declare_participants_activation_markers(self):
        src = "sequenceDiagram\nWeb App->>+DB: query\nDB-->>-Web App: rows"
        out = declare_sequence_participants(src)
        assert 'participant Web_App as "Web App"' in out
        assert "Web_App->>+DB: query" in out
        assert "DB-->>-Web_App: rows" in out
        assert "participant DB" not in out

    def test_declare_participants_discovery_order(self):
        src = "sequenceDiagram\nMobile App->>API Gateway: a\nAPI Gateway->>Order Svc: b"
        out = declare_sequence_participants(src)
        lines = out.split("\n")
        assert lines[1] == '    participant Mobile_App as "Mobile App"'
        assert lines[2] == '    participant API_Gateway as "API Gateway"'
        assert lines[3] == '    participant Order_Svc as "Order Svc"'

    @pytest.mark.parametrize("line,expected", [
        ("Web App-xDB: drop", "Web_App-xDB: drop"),
        ("Web App--xDB: drop", "Web_App--xDB: drop"),
        ("Web App-)Queue: publish", "Web_App-)Queue: publish"),
        ("Web App--)Queue: publish", "Web_App--)Queue: publish"),
        ("Web App<<->>Auth Service: sync", "Web_App<<->>Auth_Service: sync"),
        ("Web App<<-->>Auth Service: sync", "Web_App<<-->>Auth_Service: sync"),
    ])
    def test_declare_participants_all_arrow_forms(self, line, expected):
        out = declare_sequence_participants("sequenceDiagram\n" + line)
        assert out.split("\n")[-1] == expected
        assert 'participant Web_App as "Web App"' in out

    def test_declare_participants_endpoint_containing_cross(self):
        src = "sequenceDiagram\nAuth-xyz->>Order Service: place"
        assert declare_sequence_participants(src) == (
            "sequenceDiagram\n"
            '    participant Auth_xyz as "Auth-xyz"\n'
            '    participant Order_Service as "Order Service"\n'
            "Auth_xyz->>Order_Service: place"
        )

    def test_declare_participants_rewrites_names_in_message_text(self):
        src = "sequenceDiagram\nUser Service->>DB: ask User Service for token"
        out = declare_sequence_participants(src)
        assert out.split("\n")[-1] == "User_Service->>DB: ask User_Service for token"

    def test_stage_order(self):
        assert [name for name, _ in MERMAID_REPAIR_STAGES] == [
            "normalize_escapes",
            "strip_code_fences",
            "strip_trailing_comments",
            "collapse_label_newlines",
            "replace_label_ampersands",
            "quote_parenthesized_labels",
            "repair_subgraph_titles",
            "normalize_escaped_quotes",
            "declare_sequence_participants",
        ]

    @pytest.mark.parametrize("name,stage", MERMAID_REPAIR_STAGES)
    @pytest.mark.parametrize("src", MESSY_SOURCES)
    def test_each_stage_is_idempotent(self, name, stage, src):
        once = stage(src)
        assert stage(once) == once


class TestSanitizeMermaid:

    def test_label_repair(self):
        out = sanitize_mermaid("flowchart TD\nA[Load Balancer (Nginx)]")
        assert 'A["Load Balancer (Nginx)"]' in out

    def test_ampersand_repair(self):
        out = sanitize_mermaid('flowchart TD\nA["Cache & DB"]')
        assert '"Cache and DB"' in out

    def test_undeclared_participants(self):
        out = sanitize_mermaid("sequenceDiagram\nUser Service->>Auth Service: login")
        lines = out.split("\n")
        assert lines[0] == "sequenceDiagram"
        assert lines[1].strip() == 'participant User_Service as "User Service"'
        assert lines[2].strip() == 'participant Auth_Service as "Auth Service"'
        assert lines[3] == "User_Service->>Auth_Service: login"

    def test_trailing_comment_removed(self):
        assert sanitize_mermaid("graph TD\nA-->B\n%% note") == "graph TD\nA-->B"
        assert sanitize_mermaid("graph TD\nA-->B %%%") == "graph TD\nA-->B"

    def test_escaped_source_end_to_end(self):
        out = sanitize_mermaid("```mermaid\\nflowchart TD\\n  A[Web (React)] --> B[\\\"Cache & DB\\\"]\\n```")
        assert out == "flowchart TD\n  A[\"Web (React)\"] --> B['Cache & DB']"

    def test_escaped_quotes_inside_label_are_collapsed(self):
        out = sanitize_mermaid('graph TD\nA["first\n  \\"second\\" & third"]')
        assert out == "graph TD\nA[\"first 'second' and third\"]"

    def test_clean_sources_unchanged(self):
        assert sanitize_mermaid(CLEAN_FLOWCHART) == CLEAN_FLOWCHART
        assert sanitize_mermaid(CLEAN_SEQUENCE) == CLEAN_SEQUENCE

    def test_none_and_non_text(self):
        assert sanitize_mermaid(None) == ""
        assert sanitize_mermaid("") == ""

    @pytest.mark.parametrize("src", MESSY_SOURCES)
    def test_idempotent(self, src):
        once = sanitize_mermaid(src)
        assert sanitize_mermaid(once) == once
