"""Build detection strategies from configuration."""

from config import DETECTION_MODES, config
from detection.base import DetectionStrategy
from detection.deepgram_client import DeepgramIntentClient
from detection.gemini_client import GeminiClient
from detection.intent import ExternalIntentStrategy
from detection.merger import CandidateMerger, MergePolicy
from detection.parallel import MergedStrategy
from detection.question_detector import PatternStrategy
from detection.semantic import SemanticStrategy
from evaluation.ground_truth import GroundTruthExtractor


def _semantic_backend(cfg):
    return GeminiClient(api_key=cfg.gemini_api_key, model=cfg.gemini_model)


def _intent_backend(cfg):
    return DeepgramIntentClient(api_key=cfg.deepgram_api_key, timeout_ms=cfg.deepgram_timeout_ms)


def build_strategy(mode: str = None, cfg=config, semantic_backend=None, intent_backend=None) -> DetectionStrategy:
    """
    Construct a strategy variant.

    Args:
        mode: pattern, semantic, intent or parallel (defaults to DETECTION_MODE)
        cfg: Configuration to read thresholds and keys from
        semantic_backend: Backend for the semantic strategy, Gemini when omitted
        intent_backend: Backend for the intent strategy, Deepgram when omitted

    Returns:
        Configured strategy

    Raises:
        ValueError: On an unknown mode or a missing API key
    """
    mode = mode or cfg.detection_mode
    if mode not in DETECTION_MODES:
        raise ValueError(f"Unknown detection mode '{mode}', expected one of {', '.join(DETECTION_MODES)}")

    if mode == "pattern":
        return PatternStrategy(min_confidence=cfg.pattern_min_confidence)

    if mode == "semantic":
        return SemanticStrategy(semantic_backend or _semantic_backend(cfg),
                                min_confidence=cfg.semantic_min_confidence)

    if mode == "intent":
        return ExternalIntentStrategy(intent_backend or _intent_backend(cfg),
                                      min_confidence=cfg.intent_min_confidence)

    # Fast recall first, slow precision second
    return MergedStrategy(
        [
            PatternStrategy(min_confidence=cfg.pattern_min_confidence),
            SemanticStrategy(semantic_backend or _semantic_backend(cfg),
                             min_confidence=cfg.semantic_min_confidence),
        ],
        merger=CandidateMerger(MergePolicy.from_config(cfg)),
        timeout=cfg.strategy_timeout_seconds,
    )


def build_all_strategies(cfg=config, semantic_backend=None, intent_backend=None) -> list[DetectionStrategy]:
    """Build every variant, for side-by-side evaluation."""
    return [
        build_strategy(mode, cfg, semantic_backend=semantic_backend, intent_backend=intent_backend)
        for mode in DETECTION_MODES
    ]


def build_ground_truth_extractor(cfg=config, backend=None) -> GroundTruthExtractor:
    """Build the extractor for offline ground truth, on GROUND_TRUTH_MODEL unless a backend is given."""
    return GroundTruthExtractor(backend or GeminiClient(api_key=cfg.gemini_api_key, model=cfg.ground_truth_model))
