# respec_engine/base_utils.py


import logging
import re

import commentjson
import yaml

from respec_engine.llm_client import ChatLlmClient, LlmClient
from respec_engine.settings import LLM_TIMEOUT, VERTEX_PROJECT, VERTEX_REGION


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("respec_engine")


class BaseUtils():
    llm_timeout: float = LLM_TIMEOUT

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            text = f"\033[{color_code}m{text}\033[0m"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code or "").strip()

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Replaces {KEY} placeholders with kwargs values, touching only the keys that
        are passed. Unlike str.format, literal braces elsewhere (JSON examples in
        prompts) are left alone.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            missing_keys.append(key)
            return match.group(0)

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.info(f"\033[93m\033[3mMissing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}\033[0m")
        return result

    def load_fault_tolerant_json(self, json_str):
        """
        Parse JSON-ish LLM output: commentjson first, then pyyaml on a sanitised
        copy, then json_repair. Returns None when nothing parses.
        """
        def sanitize_json_string(input_str):
            def process_string_segment(match):
                content = match.group(1)
                content = re.sub(r'(?<!\\)\\(?![bfnrtu"\\/])', r'\\\\', content)
                content = re.sub(r'(?<!\\)\n', r'\\n', content)
                return f'"{content}"'

            input_str = self.clean_triple_backticks(input_str)
            input_str = re.sub(r'//.*?$|/\*.*?\*/', '', input_str, flags=re.MULTILINE | re.DOTALL)
            return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', process_string_segment, input_str, flags=re.DOTALL)

        def load_json(text):
            err = ""
            try:
                return commentjson.loads(self.clean_triple_backticks(text)), ""
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(sanitize_json_string(text))
                if isinstance(data, (dict, list)):
                    return data, ""
                err += "\n--\nload_fault_tolerant_json: YAML parsing did not produce an object"
            except yaml.YAMLError as e:
                err += "\n--\n" + str(e)
            return None, err

        if not isinstance(json_str, str) or not json_str.strip():
            return None

        data, err = load_json(json_str)
        if data is not None:
            return data

        from json_repair import repair_json
        repaired = repair_json(self.clean_triple_backticks(json_str))
        r_data, r_err = load_json(repaired) if isinstance(repaired, str) else (None, "json_repair failed")
        if r_data is not None:
            return r_data
        self.color_print(f"load_fault_tolerant_json: JSON parsing failed: {err}\n{r_err}", color="red")
        return None

    # -----------------------
    # LLM wiring
    # -----------------------

    def _build_llms_for_model(self, model_name: str | None):
        """
        Returns (completion_llm, chat_llm), or (None, None) when no model is
        configured or the clients cannot be created.
        """
        if not model_name:
            return None, None
        try:
            llm = LlmClient(
                model_name,
                vertex_project=VERTEX_PROJECT,
                vertex_region=VERTEX_REGION,
                timeout=self.llm_timeout,
            )
            chat_llm = ChatLlmClient(
                model_name,
                vertex_project=VERTEX_PROJECT,
                vertex_region=VERTEX_REGION,
                timeout=self.llm_timeout,
            )
            return llm, chat_llm
        except Exception as e:
            logger.info(f"Warning: Could not initialize LLMs for {model_name}: {e}. Falling back to deterministic mode.")
            return None, None
