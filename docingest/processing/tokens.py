"""
Token counting and model registry.

Token counts use tiktoken. Models with a published OpenAI encoding are
counted exactly. Every other model family is approximated by counting with
the default encoding (cl100k_base) and scaling by a per-model ratio. The
ratios are rough estimates with no calibration source, so they can be
overridden from configuration.

The registry is built once at import and exposed read-only; lookups never
fail. An unknown model falls back to the default encoding with ratio 1.0.
"""

import logging
import math
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

import tiktoken
from pydantic import BaseModel, ConfigDict

from docingest.processing.models import TokenAnalysis

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4"
DEFAULT_ENCODING = "cl100k_base"
DEFAULT_CONTEXT_WINDOW = 8192
MIN_CHUNK_SIZE = 1000


class ModelProfile(BaseModel):
    """Static tokenizer and pricing facts for one model."""

    model_config = ConfigDict(frozen=True)

    id: str
    provider: str
    context_window: int
    input_cost: float  # USD per 1K tokens
    output_cost: float
    has_encoder: bool
    approximation_ratio: float = 1.0
    category: str = "other"
    encoding: str = DEFAULT_ENCODING


def _profile(model_id: str, **fields) -> ModelProfile:
    return ModelProfile(id=model_id, **fields)


_PROFILES = [
    # OpenAI - exact tokenizers
    _profile("gpt-4", provider="openai", context_window=8192, input_cost=0.03, output_cost=0.06,
             has_encoder=True, category="flagship"),
    _profile("gpt-4-turbo", provider="openai", context_window=128000, input_cost=0.01, output_cost=0.03,
             has_encoder=True, category="flagship"),
    _profile("gpt-4o", provider="openai", context_window=128000, input_cost=0.0025, output_cost=0.01,
             has_encoder=True, category="flagship", encoding="o200k_base"),
    _profile("gpt-4o-mini", provider="openai", context_window=128000, input_cost=0.00015, output_cost=0.0006,
             has_encoder=True, category="efficient", encoding="o200k_base"),
    _profile("gpt-3.5-turbo", provider="openai", context_window=4096, input_cost=0.0015, output_cost=0.002,
             has_encoder=True, category="efficient"),
    _profile("gpt-3.5-turbo-16k", provider="openai", context_window=16384, input_cost=0.003, output_cost=0.004,
             has_encoder=True, category="efficient"),

    # Anthropic
    _profile("claude-3-opus", provider="anthropic", context_window=200000, input_cost=0.015, output_cost=0.075,
             has_encoder=False, approximation_ratio=1.2, category="flagship"),
    _profile("claude-3-sonnet", provider="anthropic", context_window=200000, input_cost=0.003, output_cost=0.015,
             has_encoder=False, approximation_ratio=1.2, category="balanced"),
    _profile("claude-3-haiku", provider="anthropic", context_window=200000, input_cost=0.00025, output_cost=0.00125,
             has_encoder=False, approximation_ratio=1.2, category="efficient"),
    _profile("claude-3.5-sonnet", provider="anthropic", context_window=200000, input_cost=0.003, output_cost=0.015,
             has_encoder=False, approximation_ratio=1.2, category="flagship"),

    # Google
    _profile("gemini-1.5-pro", provider="google", context_window=2000000, input_cost=0.00125, output_cost=0.005,
             has_encoder=False, approximation_ratio=0.8, category="flagship"),
    _profile("gemini-1.5-flash", provider="google", context_window=1000000, input_cost=0.000075, output_cost=0.0003,
             has_encoder=False, approximation_ratio=0.8, category="efficient"),
    _profile("gemini-pro", provider="google", context_window=32768, input_cost=0.0005, output_cost=0.0015,
             has_encoder=False, approximation_ratio=0.8, category="balanced"),

    # DeepSeek
    _profile("deepseek-chat", provider="deepseek", context_window=32768, input_cost=0.00014, output_cost=0.00028,
             has_encoder=False, approximation_ratio=1.0, category="efficient"),
    _profile("deepseek-coder", provider="deepseek", context_window=16384, input_cost=0.00014, output_cost=0.00028,
             has_encoder=False, approximation_ratio=1.0, category="specialized"),

    # Mistral
    _profile("mistral-large", provider="mistral", context_window=32768, input_cost=0.004, output_cost=0.012,
             has_encoder=False, approximation_ratio=1.1, category="flagship"),
    _profile("mistral-medium", provider="mistral", context_window=32768, input_cost=0.00275, output_cost=0.0081,
             has_encoder=False, approximation_ratio=1.1, category="balanced"),

    # Meta Llama (average pricing across hosting providers)
    _profile("llama-3-70b", provider="meta", context_window=8192, input_cost=0.00059, output_cost=0.00079,
             has_encoder=False, approximation_ratio=0.9, category="balanced"),
    _profile("llama-3-8b", provider="meta", context_window=8192, input_cost=0.00005, output_cost=0.00008,
             has_encoder=False, approximation_ratio=0.9, category="efficient"),
]

MODEL_REGISTRY: Mapping[str, ModelProfile] = MappingProxyType({p.id: p for p in _PROFILES})

MODEL_ALIASES: Mapping[str, str] = MappingProxyType({
    "gpt4": "gpt-4",
    "gpt-4-0613": "gpt-4",
    "gpt-4-turbo-preview": "gpt-4-turbo",
    "gpt-4-1106-preview": "gpt-4-turbo",
    "gpt-4o-2024-05-13": "gpt-4o",
    "gpt3.5": "gpt-3.5-turbo",
    "gpt-3.5": "gpt-3.5-turbo",
    "gpt-3.5-turbo-0613": "gpt-3.5-turbo",
    "claude-opus": "claude-3-opus",
    "opus": "claude-3-opus",
    "claude-sonnet": "claude-3-sonnet",
    "sonnet": "claude-3-sonnet",
    "claude-haiku": "claude-3-haiku",
    "haiku": "claude-3-haiku",
    "claude-3.5": "claude-3.5-sonnet",
    "claude-3.5-sonnet-20241022": "claude-3.5-sonnet",
    "gemini-pro-1.5": "gemini-1.5-pro",
    "gemini-1.5": "gemini-1.5-pro",
    "gemini": "gemini-pro",
    "gemini-pro-vision": "gemini-pro",
})


def normalize_model_name(model: Optional[str]) -> str:
    return (model or "").strip().lower()


def resolve_model(model: Optional[str]) -> Optional[ModelProfile]:
    """Resolve a model id or alias to its profile, or None if unknown."""
    name = normalize_model_name(model)
    name = MODEL_ALIASES.get(name, name)
    return MODEL_REGISTRY.get(name)


def get_model_profile(model: Optional[str]) -> ModelProfile:
    """
    Resolve a model to its profile; unknown models get a fallback profile
    (default encoding, ratio 1.0, default context window, no pricing).
    """
    profile = resolve_model(model)
    if profile is not None:
        return profile
    return ModelProfile(
        id=normalize_model_name(model),
        provider="unknown",
        context_window=DEFAULT_CONTEXT_WINDOW,
        input_cost=0.0,
        output_cost=0.0,
        has_encoder=False,
        category="unknown",
    )


@lru_cache(maxsize=None)
def get_encoding(name: str) -> tiktoken.Encoding:
    """Load (once) a tiktoken encoding by name."""
    return tiktoken.get_encoding(name)


class TokenCounter:
    """
    Per-model token counting, cost estimation and context-window lookups.

    Instances hold no mutable per-document state and can be shared by
    concurrent jobs.
    """

    def __init__(self, ratio_overrides: Optional[Dict[str, float]] = None):
        """
        Args:
            ratio_overrides: Approximation ratio per model id (or alias),
                replacing the built-in estimate for non-exact models
        """
        self.ratio_overrides: Dict[str, float] = {}
        for model, ratio in (ratio_overrides or {}).items():
            profile = resolve_model(model)
            self.ratio_overrides[profile.id if profile else normalize_model_name(model)] = ratio
        self._warned_models: set[str] = set()
        self._unavailable_encodings: set[str] = set()

    def _warn_unknown(self, model: str) -> None:
        if model not in self._warned_models:
            self._warned_models.add(model)
            logger.warning(f"Unknown model: {model!r}, using {DEFAULT_ENCODING} with ratio 1.0")

    def ratio_for(self, profile: ModelProfile) -> float:
        return self.ratio_overrides.get(profile.id, profile.approximation_ratio)

    def _encode_length(self, text: str, encoding_name: str) -> int:
        if encoding_name not in self._unavailable_encodings:
            try:
                encoding = get_encoding(encoding_name)
            except Exception as e:
                self._unavailable_encodings.add(encoding_name)
                logger.warning(f"Tokenizer {encoding_name} unavailable, using character estimate: {e}")
            else:
                return len(encoding.encode(text, disallowed_special=()))
        return math.ceil(len(text) / 4)

    def encoding_for(self, profile: Optional[ModelProfile]) -> str:
        return profile.encoding if profile is not None and profile.has_encoder else DEFAULT_ENCODING

    def count_tokens(self, text: str, model: str = DEFAULT_MODEL) -> int:
        """
        Count tokens in text for a model.

        Exact models use their own encoding; others scale the default
        encoding's count by the model's ratio, rounded to the nearest
        integer. Never raises for an unknown model.
        """
        if not text:
            return 0

        profile = resolve_model(model)
        if profile is None:
            self._warn_unknown(normalize_model_name(model))
            return self._encode_length(text, DEFAULT_ENCODING)

        if profile.has_encoder:
            return self._encode_length(text, profile.encoding)

        base_tokens = self._encode_length(text, DEFAULT_ENCODING)
        return int(round(base_tokens * self.ratio_for(profile)))

    def estimate_cost(self, token_count: int, model: str = DEFAULT_MODEL, kind: str = "input") -> float:
        """Cost in USD of token_count tokens, rounded to 4 decimal places."""
        profile = resolve_model(model)
        if profile is None:
            return 0.0
        price = profile.output_cost if kind == "output" else profile.input_cost
        return round(token_count / 1000 * price, 4)

    def get_context_window(self, model: str = DEFAULT_MODEL) -> int:
        profile = resolve_model(model)
        return profile.context_window if profile else DEFAULT_CONTEXT_WINDOW

    def optimal_chunk_size(self, model: str = DEFAULT_MODEL, buffer_fraction: float = 0.2) -> int:
        """Largest chunk that leaves buffer_fraction of the window free, never below 1000."""
        window = self.get_context_window(model)
        return max(MIN_CHUNK_SIZE, window - math.floor(window * buffer_fraction))

    def analyze(self, text: str, model: str = DEFAULT_MODEL) -> TokenAnalysis:
        """
        Token count, cost and context utilization of text for a model.

        The output cost assumes a response as long as the input.
        """
        text = text or ""
        profile = resolve_model(model)
        token_count = self.count_tokens(text, model)
        window = profile.context_window if profile else DEFAULT_CONTEXT_WINDOW

        input_cost = self.estimate_cost(token_count, model, "input")
        output_cost = self.estimate_cost(token_count, model, "output")
        recommended = self.optimal_chunk_size(model)

        if profile is None or self.encoding_for(profile) in self._unavailable_encodings:
            accuracy = "fallback"
        elif profile.has_encoder:
            accuracy = "exact"
        else:
            accuracy = "approximation"

        return TokenAnalysis(
            token_count=token_count,
            character_count=len(text),
            word_count=len(text.split()),
            model=profile.id if profile else normalize_model_name(model),
            provider=profile.provider if profile else "unknown",
            context_window=window,
            exceeds_context=token_count > window,
            utilization_percent=round(token_count / window * 100, 2),
            input_cost=input_cost,
            estimated_output_cost=output_cost,
            total_cost=round(input_cost + output_cost, 4),
            accuracy=accuracy,
            category=profile.category if profile else "unknown",
            recommended_chunk_size=recommended,
            chunks_needed=math.ceil(token_count / recommended) if token_count else 0,
        )

    def is_model_supported(self, model: str) -> bool:
        return resolve_model(model) is not None

    def supported_models(self) -> Dict[str, List[dict]]:
        """Canonical models grouped by category (aliases are not listed)."""
        models: Dict[str, List[dict]] = {}
        for profile in MODEL_REGISTRY.values():
            models.setdefault(profile.category, []).append({
                "id": profile.id,
                "provider": profile.provider,
                "context_window": profile.context_window,
                "input_cost": profile.input_cost,
                "has_encoder": profile.has_encoder,
                "accuracy": "exact" if profile.has_encoder else "approximation",
            })
        return models
