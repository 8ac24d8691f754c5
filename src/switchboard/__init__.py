"""Switchboard: one request model, many AI providers.

Public API:
    - AIServiceManager: route requests to providers with fallback
    - AIRequest / AIResponse: the provider-agnostic vocabulary
    - ServiceConfiguration / ProviderConfig: settings
    - ToolRegistry: permission-checked tool execution
"""

from __future__ import annotations

import logging

from switchboard.assistant import AssistantSession, build_chat_request
from switchboard.capabilities import (
    HealthStatus,
    ModelInfo,
    ProviderCapabilities,
    ProviderInfo,
    RequiredCapabilities,
)
from switchboard.config import (
    ProviderConfig,
    RateLimitConfig,
    ServiceConfiguration,
    TimeoutConfig,
)
from switchboard.errors import (
    ConfigurationError,
    ParseError,
    PipelineError,
    RateLimitError,
    RequestBuildError,
    RequestCancelledError,
    ServiceCreationError,
    ServiceError,
    ServiceTimeoutError,
    ServiceUnavailableError,
    SwitchboardError,
    ToolExecutionError,
    ValidationError,
)
from switchboard.manager import AIServiceManager
from switchboard.models import (
    Attachment,
    Citation,
    Message,
    Role,
    ThinkingContent,
    TokenUsage,
    ToolCall,
    WebSource,
)
from switchboard.pipeline import RequestPipeline
from switchboard.registry import AIServiceFactory, ProviderRegistry, default_registry
from switchboard.request import (
    AIRequest,
    ExecutionContext,
    Permission,
    RequestParameters,
    ToolSpec,
)
from switchboard.response import AIError, AIResponse, FinishReason
from switchboard.retry import RetryPolicy
from switchboard.tools import ToolRegistry, register_default_tools

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("switchboard-ai")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("switchboard").addHandler(logging.NullHandler())

__all__ = [
    "AIError",
    "AIRequest",
    "AIResponse",
    "AIServiceFactory",
    "AIServiceManager",
    "AssistantSession",
    "Attachment",
    "Citation",
    "ConfigurationError",
    "ExecutionContext",
    "FinishReason",
    "HealthStatus",
    "Message",
    "ModelInfo",
    "ParseError",
    "Permission",
    "PipelineError",
    "ProviderCapabilities",
    "ProviderConfig",
    "ProviderInfo",
    "ProviderRegistry",
    "RateLimitConfig",
    "RateLimitError",
    "RequestBuildError",
    "RequestCancelledError",
    "RequestParameters",
    "RequestPipeline",
    "RequiredCapabilities",
    "RetryPolicy",
    "Role",
    "ServiceConfiguration",
    "ServiceCreationError",
    "ServiceError",
    "ServiceTimeoutError",
    "ServiceUnavailableError",
    "SwitchboardError",
    "ThinkingContent",
    "TimeoutConfig",
    "TokenUsage",
    "ToolCall",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolSpec",
    "ValidationError",
    "WebSource",
    "build_chat_request",
    "default_registry",
    "register_default_tools",
]
