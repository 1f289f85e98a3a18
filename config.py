"""Configuration management for the question detection service."""

from dataclasses import dataclass
import os


DETECTION_MODES = ("pattern", "semantic", "intent", "parallel")
EMISSION_POLICIES = ("first_arrival", "wait_for_all", "agreement")


@dataclass
class Config:
    # Gemini Configuration (semantic strategy + ground truth)
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
    ground_truth_model: str = os.getenv("GROUND_TRUTH_MODEL", "gemini-1.5-pro")

    # Deepgram Configuration (external intent strategy)
    deepgram_api_key: str = os.getenv("DEEPGRAM_API_KEY", "")
    deepgram_timeout_ms: int = int(os.getenv("DEEPGRAM_TIMEOUT_MS", "5000"))

    # Utterance Buffer Configuration
    silence_gap_ms: int = int(os.getenv("SILENCE_GAP_MS", "750"))
    punctuation_grace_ms: int = int(os.getenv("PUNCTUATION_GRACE_MS", "300"))
    max_utterance_duration_ms: int = int(os.getenv("MAX_UTTERANCE_DURATION_MS", "12000"))
    max_utterance_length: int = int(os.getenv("MAX_UTTERANCE_LENGTH", "500"))

    # Strategy Configuration
    detection_mode: str = os.getenv("DETECTION_MODE", "pattern")
    pattern_min_confidence: float = float(os.getenv("PATTERN_MIN_CONFIDENCE", "0.4"))
    semantic_min_confidence: float = float(os.getenv("SEMANTIC_MIN_CONFIDENCE", "0.7"))
    intent_min_confidence: float = float(os.getenv("INTENT_MIN_CONFIDENCE", "0.7"))
    strategy_timeout_seconds: float = float(os.getenv("STRATEGY_TIMEOUT_SECONDS", "30"))

    # Merger Configuration
    merge_similarity_threshold: float = float(os.getenv("MERGE_SIMILARITY_THRESHOLD", "0.6"))
    merge_emission_policy: str = os.getenv("MERGE_EMISSION_POLICY", "first_arrival")
    merge_agreement_key: str = os.getenv("MERGE_AGREEMENT_KEY", "span")
    merge_min_agreement: int = int(os.getenv("MERGE_MIN_AGREEMENT", "2"))
    merge_gate_on_first: bool = os.getenv("MERGE_GATE_ON_FIRST", "False").lower() == "true"

    # Evaluation Configuration
    match_threshold: float = float(os.getenv("MATCH_THRESHOLD", "0.7"))

    # API Server Configuration
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "5000"))
    api_debug: bool = os.getenv("API_DEBUG", "False").lower() == "true"
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")
    drain_timeout_seconds: float = float(os.getenv("DRAIN_TIMEOUT_SECONDS", "10"))

    # Logging Configuration
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_payload_chars: int = int(os.getenv("LOG_PAYLOAD_CHARS", "500"))

    def problems(self) -> list[str]:
        """
        Collect configuration problems.

        Returns:
            Human readable problem descriptions, empty when the config is usable
        """
        found = []

        if self.detection_mode not in DETECTION_MODES:
            found.append(f"DETECTION_MODE '{self.detection_mode}' is not one of {', '.join(DETECTION_MODES)}")

        # Semantic and parallel modes call Gemini
        if self.detection_mode in ("semantic", "parallel") and not self.gemini_api_key:
            found.append(f"GEMINI_API_KEY is missing (required by DETECTION_MODE={self.detection_mode})")

        if self.detection_mode == "intent" and not self.deepgram_api_key:
            found.append("DEEPGRAM_API_KEY is missing (required by DETECTION_MODE=intent)")

        if self.merge_emission_policy not in EMISSION_POLICIES:
            found.append(f"MERGE_EMISSION_POLICY '{self.merge_emission_policy}' is not one of {', '.join(EMISSION_POLICIES)}")

        if self.merge_agreement_key not in ("span", "utterance"):
            found.append(f"MERGE_AGREEMENT_KEY '{self.merge_agreement_key}' must be 'span' or 'utterance'")

        for name in ("pattern_min_confidence", "semantic_min_confidence", "intent_min_confidence",
                     "merge_similarity_threshold", "match_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                found.append(f"{name.upper()} must be within [0, 1], got {value}")

        if self.punctuation_grace_ms > self.silence_gap_ms:
            found.append("PUNCTUATION_GRACE_MS should not exceed SILENCE_GAP_MS")

        return found

    def validate(self) -> bool:
        """
        Validate configuration settings.

        Returns:
            True if all validations pass, False otherwise
        """
        # Imported here, logger reads this module at import time
        from logger import log_warning

        found = self.problems()
        for problem in found:
            log_warning(f"Configuration error: {problem}")
        return not found


config = Config()
