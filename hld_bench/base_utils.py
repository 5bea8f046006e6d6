# hld_bench/base_utils.py

import json
import logging
import re
import time


logger = logging.getLogger("hld_bench")

# First fenced block only; optional language tag, optional newline before the closing fence.
_FENCED_BLOCK_RE = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n?(.*?)\n?```", flags=re.DOTALL)


def extract_candidate(raw) -> str:
    """
    Returns the interior of the first ```-fenced block in `raw`,
    or `raw` unchanged when there is no fence.
    """
    if raw is None:
        return ""
    text = str(raw)
    match = _FENCED_BLOCK_RE.search(text)
    if match:
        return match.group(1)
    return text


class Timer:
    """
    Wall clock for a single run, in milliseconds.
    """

    def __init__(self):
        self._start = time.perf_counter()

    def elapsed(self) -> int:
        return int(round((time.perf_counter() - self._start) * 1000))

    def display(self) -> str:
        ms = self.elapsed()
        if ms < 1000:
            return f"{ms}ms"
        return f"{ms / 1000:.1f}s"


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97',
            'dim': '2',
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value, indent=2)
        except TypeError:
            return str(value).strip()

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Formats a destination string by replacing placeholders with corresponding values from kwargs.

        Unlike str.format it only looks for the keys passed in kwargs, so literal braces
        (JSON examples, Mermaid snippets) inside the template survive untouched.
        Placeholders with no matching key are left as they are and reported.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return self._coerce_field_to_str(kwargs[key]) if not isinstance(kwargs[key], str) else kwargs[key]
            missing_keys.append(key)
            return match.group(0)

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"Missing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}")
        return result
