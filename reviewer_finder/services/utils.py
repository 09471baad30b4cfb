"""Utility functions for parsing LLM responses."""
import json
import logging

import json_repair

logger = logging.getLogger(__name__)


def _preprocess_response(response: str) -> str:
    """Strip markdown, preamble, and return content from first '{'."""
    response = response.strip()
    if response.startswith("```json"):
        response = response[7:]
    if response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    response = response.strip()
    idx = response.find("{")
    if idx >= 0:
        response = response[idx:]
    return response


def _try_close_truncated_json(s: str) -> str:
    """If string looks truncated, close open strings, arrays and objects in order."""
    s = s.rstrip()
    if not s or s[-1] == "}":
        return s
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in s:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    closed = s + ('"' if in_string else "")
    if closed.rstrip()[-1:] in (",", ":"):
        closed = closed.rstrip() + " null"
    return closed + "".join(reversed(stack))


def parse_json_response(response: str) -> dict:
    """Parse a JSON object from an LLM response, handling markdown, preamble and trailing text.
    Tries: 1) strict parse, 2) truncate at last '}', 3) json_repair on full, 4) close truncated and repair.
    Raises only if nothing usable."""
    preprocessed = _preprocess_response(response)
    first_error = None

    try:
        dec = json.JSONDecoder()
        obj, _ = dec.raw_decode(preprocessed)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError as e:
        first_error = e
        logger.warning("Failed to parse JSON: %s", e)
        logger.debug("Response was: %s", response[:500])

    # Try to recover partial JSON by truncating at last complete '}'
    last_brace = preprocessed.rfind("}")
    if last_brace > 0:
        partial = preprocessed[: last_brace + 1]
        if partial.count("{") == partial.count("}"):
            try:
                obj, _ = json.JSONDecoder().raw_decode(partial)
                if isinstance(obj, dict):
                    logger.warning("Recovered partial JSON by truncating at last complete brace")
                    return obj
            except json.JSONDecodeError:
                pass

    try:
        obj = json_repair.loads(preprocessed)
        if isinstance(obj, dict) and obj:
            logger.warning("Recovered JSON using json_repair after strict parse failed")
            return obj
    except Exception as repair_err:
        logger.debug("json_repair on full failed: %s", repair_err)

    closed = _try_close_truncated_json(preprocessed)
    if closed != preprocessed:
        try:
            obj = json_repair.loads(closed)
            if isinstance(obj, dict) and obj:
                logger.warning("Recovered JSON by closing truncated string and using json_repair")
                return obj
        except Exception as repair_err:
            logger.debug("json_repair on closed string failed: %s", repair_err)

    if first_error is not None:
        raise first_error
    raise ValueError("Failed to parse JSON")


def as_str_list(value) -> list[str]:
    """Coerce an LLM field that should be a list of strings (may be a string, None or mixed list)."""
    if value is None:
        return []
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []
