"""Error classification for discovery runs."""
import logging

logger = logging.getLogger(__name__)

STAGES = ("analysis", "discovery", "enrichment", "persistence")


class StageError(Exception):
    """A failure fatal to one pipeline stage (analysis, discovery, enrichment, persistence)."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


def classify_error(error_type: str, error: Exception, recovered: bool = False) -> tuple[str, str]:
    """
    Classify an error by type and determine severity.

    Args:
        error_type: Type of error (llm_failure, json_parse_error, source_error,
            verification_error, coi_error, enrichment_error, database_error,
            persistence_error, timeout, other)
        error: The exception object
        recovered: Whether the error was recovered from

    Returns:
        Tuple of (severity, stage)
    """
    severity_map = {
        "llm_failure": "critical",
        "json_parse_error": "warning" if recovered else "critical",
        "source_error": "warning",
        "verification_error": "warning",
        "coi_error": "warning",
        "enrichment_error": "warning",
        "database_error": "critical",
        "persistence_error": "critical",
        "timeout": "critical",
        "other": "warning",
    }

    stage_map = {
        "llm_failure": "analysis",
        "json_parse_error": "analysis",
        "source_error": "discovery",
        "verification_error": "discovery",
        "coi_error": "discovery",
        "enrichment_error": "enrichment",
        "database_error": "persistence",
        "persistence_error": "persistence",
        "timeout": "discovery",
        "other": "discovery",
    }

    severity = severity_map.get(error_type, "warning")
    stage = error.stage if isinstance(error, StageError) else stage_map.get(error_type, "discovery")

    return severity, stage
