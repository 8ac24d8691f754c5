"""Capability-aware provider selection."""

from __future__ import annotations

from collections.abc import Iterable
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from switchboard.capabilities import ProviderCapabilities
    from switchboard.registry import ProviderRegistry
    from switchboard.request import AIRequest

logger = logging.getLogger(__name__)

BASE_SCORE = 100
CAPABILITY_BONUS = 50
PREFERRED_BONUS = 200
_SCORED_CAPABILITIES = ("streaming", "vision", "tools")


class ProviderSelector:
    """Pick the best compatible provider for a request.

    Each compatible provider scores 100, plus 50 for every scored capability
    the request requires and the provider supports, plus 200 when preferred.
    Ties keep registry order.
    """

    def __init__(
        self, registry: ProviderRegistry, preferred_providers: Iterable[str] = ()
    ) -> None:
        self.registry = registry
        self.preferred_providers = frozenset(preferred_providers)

    def score(self, provider: str, capabilities: ProviderCapabilities, request: AIRequest) -> int:
        score = BASE_SCORE
        for name in _SCORED_CAPABILITIES:
            if request.requires(name) and capabilities.supports(name):
                score += CAPABILITY_BONUS
        if provider in self.preferred_providers:
            score += PREFERRED_BONUS
        return score

    def is_compatible(self, capabilities: ProviderCapabilities, request: AIRequest) -> bool:
        if not request.required_capabilities.is_compatible_with(capabilities):
            return False
        if request.has_attachments and not (capabilities.vision or capabilities.multimodal):
            return False
        return request.estimated_tokens() <= capabilities.max_tokens

    def select(
        self, request: AIRequest, candidates: Iterable[str] | None = None
    ) -> str | None:
        """Return the winning provider identity, or None if nothing qualifies."""
        pool = list(candidates) if candidates is not None else self.registry.providers()
        best: str | None = None
        best_score = -1
        for provider in pool:
            info = self.registry.provider_info(provider)
            if info is None or not self.is_compatible(info.capabilities, request):
                continue
            score = self.score(provider, info.capabilities, request)
            if score > best_score:
                best, best_score = provider, score
        if best is not None:
            logger.debug("Selected %s (score=%d) for request %s", best, best_score, request.id)
        return best
