# hld_bench/schema_manager.py
import re
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Type, Union

import commentjson
import yaml
from json_repair import repair_json
from pydantic import BaseModel, ValidationError

from hld_bench.base_utils import BaseUtils, extract_candidate


logger = logging.getLogger("hld_bench")

ROOT_PATH = "$"


class PayloadDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class ValidationIssue:
    path: Tuple[Union[str, int], ...]
    message: str

    def dotted_path(self) -> str:
        if not self.path:
            return ROOT_PATH
        return ".".join(str(p) for p in self.path)

    def __str__(self) -> str:
        return f"- {self.dotted_path()}: {self.message}"


@dataclass
class ValidationSuccess:
    data: BaseModel
    ok: bool = field(default=True, init=False)


@dataclass
class ValidationFailure:
    issues: List[ValidationIssue]
    ok: bool = field(default=False, init=False)


@dataclass
class CandidatePayload:
    """
    What one attempt believes the payload is: the text cut out of the
    raw response, and its decoded value (None when decoding failed).
    """
    text: str
    value: Any = None
    decode_error: Optional[str] = None


class SchemaManager(BaseUtils):
    """
    Decoding and validation of producer payloads against a pydantic schema.
    Holds no per-call state: one instance can be shared across threads.
    """

    # -----------------------
    # Decoding
    # -----------------------

    def load_fault_tolerant_json(self, json_str: str):
        """
        Attempts to load a JSON-like string, getting progressively more lenient:
        commentjson, then pyyaml over a sanitized copy, then json_repair.
        Only JSON objects and arrays count as success.
        Raises PayloadDecodeError with the accumulated parser errors otherwise.
        """
        def sanitize_json_string(input_str):
            """
            Makes a JSON-ish string palatable to the YAML parser:
            - comments outside of strings removed
            - literal newlines and stray backslashes inside strings escaped
            """

            def process_string_segment(match):
                content = match.group(1)
                # Escape unescaped backslashes not part of escape sequences
                content = re.sub(r'(?<!\\)\\(?![bfnrtu"\\/])', r'\\\\', content)
                # Replace literal newlines within the string content
                content = re.sub(r'(?<!\\)\n', r'\\n', content)
                return f'"{content}"'

            def remove_comments(input_str):
                return re.sub(r'^\s*//.*?$|/\*.*?\*/', '', input_str, flags=re.MULTILINE | re.DOTALL)

            input_str = self.clean_triple_backticks(input_str)
            input_str = remove_comments(input_str)
            return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', process_string_segment, input_str, flags=re.DOTALL)

        def is_structured(data) -> bool:
            return isinstance(data, (dict, list))

        def load_json(json_str):
            err = ""
            try:
                data = commentjson.loads(self.clean_triple_backticks(json_str))
                if is_structured(data):
                    return data, ""
                err = f"decoded a {type(data).__name__}, expected an object"
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(sanitize_json_string(json_str))
                if is_structured(data):
                    return data, ""
                err += "\n--\n" + "YAML parsing did not produce an object"
            except Exception as e:
                err += "\n--\n" + str(e)
            return None, err

        json_str = json_str or ""
        data, err = load_json(json_str)
        if data is not None:
            return data

        repaired_json_str = repair_json(json_str)
        r_data, r_err = load_json(repaired_json_str) if repaired_json_str else (None, err)
        if r_data is not None and r_data not in ({}, []):
            logger.debug("load_fault_tolerant_json: payload recovered by json_repair")
            return r_data
        raise PayloadDecodeError(f"load_fault_tolerant_json: JSON parsing failed: {err.strip()}")

    # -----------------------
    # Validation
    # -----------------------

    def validate(self, candidate, schema: Type[BaseModel]) -> Union[ValidationSuccess, ValidationFailure]:
        """
        Validates an already decoded value. Model instances are round-tripped
        through their wire form so that whatever the producer returned is
        re-checked against `schema` itself.
        """
        if isinstance(candidate, BaseModel):
            candidate = candidate.model_dump(by_alias=True)
        try:
            return ValidationSuccess(data=schema.model_validate(candidate))
        except ValidationError as e:
            issues = [
                ValidationIssue(path=tuple(err.get("loc") or ()), message=err.get("msg") or "Invalid value")
                for err in e.errors()
            ]
            return ValidationFailure(issues=issues)

    def parse_candidate(self, raw, schema: Type[BaseModel]) -> Tuple[CandidatePayload, Union[ValidationSuccess, ValidationFailure]]:
        """
        extract -> decode -> validate. A decode failure comes back as a single
        root-level issue so callers can treat it exactly like a validation failure.
        """
        payload = CandidatePayload(text=extract_candidate(raw))
        try:
            payload.value = self.load_fault_tolerant_json(payload.text)
        except PayloadDecodeError as e:
            payload.decode_error = str(e)
            return payload, ValidationFailure(issues=[ValidationIssue(path=(), message="Response is not valid JSON")])
        return payload, self.validate(payload.value, schema)

    # -----------------------
    # Feedback helpers
    # -----------------------

    def required_top_level_keys(self, schema: Type[BaseModel]) -> List[str]:
        keys = []
        for name, info in schema.model_fields.items():
            if info.is_required():
                keys.append(info.alias or name)
        return keys

    def format_issues(self, issues: List[ValidationIssue]) -> str:
        return "\n".join(str(issue) for issue in issues)
