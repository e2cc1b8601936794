"""Claude CLI with browser integration (``claude --chrome``)."""

from __future__ import annotations

from .claude import AUTH_RULE, NETWORK_RULE, RATE_LIMIT_RULE, ClaudeCliProvider
from .errors import ErrorRule, ProviderErrorCode
from .types import ModelDefinition

CHROME_SUFFIX = "-chrome"

CHROME_NOT_CONNECTED_RULE = ErrorRule(
    code=ProviderErrorCode.INTEGRATION_NOT_CONNECTED,
    needles=("chrome extension", "extension not connected", "chrome not connected"),
    message="Chrome extension is not connected",
    suggestion="Install and connect the Claude Chrome extension",
)


class ClaudeChromeProvider(ClaudeCliProvider):
    """Routes ``*-chrome`` models to the Claude CLI with ``--chrome`` enabled."""

    name = "claude-chrome"
    routing_suffix = CHROME_SUFFIX
    error_rules = (AUTH_RULE, CHROME_NOT_CONNECTED_RULE, RATE_LIMIT_RULE, NETWORK_RULE)

    def mode_flags(self) -> list[str]:
        return ["--chrome"]

    def available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=f"{model.model_string}{CHROME_SUFFIX}",
                name=f"{model.name} (Chrome)",
                model_string=model.model_string,
                provider=self.name,
                description=f"{model.name} with Chrome browser integration",
            )
            for model in super().available_models()
        ]

    def supports_feature(self, feature: str) -> bool:
        return feature == "chrome" or super().supports_feature(feature)


__all__ = ["CHROME_NOT_CONNECTED_RULE", "CHROME_SUFFIX", "ClaudeChromeProvider"]
