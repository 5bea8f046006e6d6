# hld_bench/recovery.py
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Type

from pydantic import BaseModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from hld_bench.base_utils import BaseUtils
from hld_bench.benchmark_prompts import CORRECTION_PROMPT, SCHEMA_HINT_PROMPT
from hld_bench.llm_client import CompletionCancelledError, CompletionError, CompletionValidationError
from hld_bench.schema_manager import SchemaManager, ValidationFailure, ValidationIssue


logger = logging.getLogger("hld_bench")

# Index of the schema-constrained attempt; manual attempts are numbered from 1.
CONSTRAINED_ATTEMPT_INDEX = 0
STATUS_ERROR_PREVIEW_CHARS = 80


class AttemptOutcome(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class CompletionAttempt:
    index: int
    transcript: List[BaseMessage]
    raw_response: Any = None
    outcome: Optional[AttemptOutcome] = None
    issues: List[ValidationIssue] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class RecoveryResult:
    data: BaseModel
    # Completion requests made, the constrained one included.
    attempts: int
    via_constrained_path: bool = False
    history: List[CompletionAttempt] = field(default_factory=list)


class RecoveryError(Exception):
    pass


class RecoveryExhaustedError(RecoveryError):
    """
    Every attempt came back, none of them validated.
    Carries the issues and raw text of the last attempt.
    """

    def __init__(self, attempts: int, issues: List[ValidationIssue], raw_response: Any, history=None):
        self.attempts = attempts
        self.issues = list(issues)
        self.raw_response = raw_response
        self.history = list(history or [])
        rendered = "\n".join(str(i) for i in self.issues)
        super().__init__(f"Validation failed after {attempts} attempt(s):\n{rendered}")


class RecoveryCancelledError(RecoveryError):
    pass


class StructuredOutputRecovery(BaseUtils):
    """
    Turns an unreliable producer into a validated record:

        1. one schema-constrained request, when the completion service supports it
        2. up to `max_attempts` plain requests, each failure fed back to the
           producer as a correction message listing the exact issues

    The instance holds no per-run state, so concurrent recover() calls are safe.
    """

    def __init__(self, schema_manager: SchemaManager | None = None):
        self.schema_manager = schema_manager or SchemaManager()

    # -----------------------
    # Helpers
    # -----------------------

    def _check_cancelled(self, cancel_event: threading.Event | None, index: int) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RecoveryCancelledError(f"Recovery cancelled before attempt {index}")

    def _evaluate(self, value, schema: Type[BaseModel]):
        if isinstance(value, str):
            _payload, result = self.schema_manager.parse_candidate(value, schema)
            return result
        return self.schema_manager.validate(value, schema)

    def build_schema_hint(self, schema: Type[BaseModel]) -> str:
        keys = ", ".join(f'"{k}"' for k in self.schema_manager.required_top_level_keys(schema))
        return self.unsafe_string_format(SCHEMA_HINT_PROMPT, REQUIRED_KEYS=keys)

    def build_correction(self, issues: List[ValidationIssue]) -> str:
        return self.unsafe_string_format(CORRECTION_PROMPT, ISSUES=self.schema_manager.format_issues(issues))

    # -----------------------
    # Constrained path
    # -----------------------

    def _try_constrained(self, prompt, schema, completion, system_prompt, max_output_tokens, history):
        """
        Returns the validated model, or None when the manual loop should take over.
        Non-validation errors are raised as they are.
        """
        attempt = CompletionAttempt(index=CONSTRAINED_ATTEMPT_INDEX, transcript=[HumanMessage(content=prompt)])
        history.append(attempt)
        try:
            value = completion.complete(
                system_prompt=system_prompt,
                messages=list(attempt.transcript),
                schema=schema,
                max_output_tokens=max_output_tokens,
                stream=False,
            )
        except CompletionValidationError as e:
            attempt.outcome = AttemptOutcome.REJECTED
            attempt.error = str(e)
            logger.info(f"[RECOVERY] constrained output rejected: {str(e)[:200]}")
            return None

        attempt.raw_response = value
        result = self._evaluate(value, schema)
        if isinstance(result, ValidationFailure):
            attempt.outcome = AttemptOutcome.INVALID
            attempt.issues = result.issues
            logger.info(f"[RECOVERY] constrained output failed validation:\n{self.schema_manager.format_issues(result.issues)}")
            return None
        attempt.outcome = AttemptOutcome.VALID
        return result.data

    # -----------------------
    # Public API
    # -----------------------

    def recover(
        self,
        prompt: str,
        schema: Type[BaseModel],
        completion,
        max_attempts: int,
        *,
        system_prompt: str,
        max_output_tokens: int = 16384,
        cancel_event: threading.Event | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> RecoveryResult:
        """
        Raises:
          - ValueError when max_attempts < 1
          - RecoveryExhaustedError when no attempt produced a valid record
          - RecoveryCancelledError when cancel_event is set or the completion was cancelled
          - the completion's own error for non-validation failures of the constrained
            request, and for any completion failure on the last manual attempt
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        def status(msg: str) -> None:
            logger.info(f"[RECOVERY] {msg}")
            if on_status:
                on_status(msg)

        history: List[CompletionAttempt] = []
        requests = 0

        try:
            if getattr(completion, "supports_structured_output", False):
                self._check_cancelled(cancel_event, CONSTRAINED_ATTEMPT_INDEX)
                requests += 1
                data = self._try_constrained(prompt, schema, completion, system_prompt, max_output_tokens, history)
                if data is not None:
                    return RecoveryResult(data=data, attempts=requests, via_constrained_path=True, history=history)
                status(f"schema validation failed, retrying with error feedback (1/{max_attempts})...")

            manual_system_prompt = system_prompt + self.build_schema_hint(schema)
            transcript: List[BaseMessage] = [HumanMessage(content=prompt)]
            last_issues: List[ValidationIssue] = []
            last_raw = None

            for index in range(1, max_attempts + 1):
                self._check_cancelled(cancel_event, index)
                attempt = CompletionAttempt(index=index, transcript=list(transcript))
                history.append(attempt)
                requests += 1
                try:
                    raw = completion.complete(
                        system_prompt=manual_system_prompt,
                        messages=list(transcript),
                        schema=None,
                        max_output_tokens=max_output_tokens,
                        stream=False,
                    )
                except CompletionCancelledError:
                    raise
                except CompletionError as e:
                    attempt.outcome = AttemptOutcome.FAILED
                    attempt.error = str(e)
                    if index == max_attempts:
                        raise
                    status(f"attempt {index} failed: {str(e)[:STATUS_ERROR_PREVIEW_CHARS]}...")
                    continue

                attempt.raw_response = raw
                logger.debug(f"[RECOVERY] attempt {index} raw response:\n{raw}")
                result = self._evaluate(raw, schema)
                if not isinstance(result, ValidationFailure):
                    attempt.outcome = AttemptOutcome.VALID
                    return RecoveryResult(data=result.data, attempts=requests, history=history)

                attempt.outcome = AttemptOutcome.INVALID
                attempt.issues = result.issues
                last_issues, last_raw = result.issues, raw

                if index < max_attempts:
                    raw_text = raw if isinstance(raw, str) else self._coerce_field_to_str(
                        raw.model_dump(by_alias=True) if isinstance(raw, BaseModel) else raw
                    )
                    transcript.append(AIMessage(content=raw_text))
                    transcript.append(HumanMessage(content=self.build_correction(result.issues)))
                    status(f"retry {index + 1}/{max_attempts} — feeding back validation errors...")

            raise RecoveryExhaustedError(attempts=requests, issues=last_issues, raw_response=last_raw, history=history)

        except CompletionCancelledError as e:
            raise RecoveryCancelledError(str(e) or "Completion cancelled") from e
