"""Router engine: resolve a role, call its provider, fall back once.

Each provider call runs as ``breaker.execute(retry_async(adapter.complete))``:
retries happen inside the breaker's protected call, so the breaker records
one outcome per fully retried sequence.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
import time
from typing import TYPE_CHECKING
import uuid

from agent_router import telemetry
from agent_router.circuit_breaker import CircuitBreakerRegistry
from agent_router.errors import (
    CircuitOpenError,
    ProviderTimeoutError,
    RateLimitError,
)
from agent_router.providers.models import (
    CompletionRequest,
    ContentBlock,
    Message,
    TextBlock,
    Tool,
    Usage,
)
from agent_router.retry import RetryPolicy, retry_async
from agent_router.router.resolver import AgentConfig, RoleResolver
from agent_router.telemetry import MetricsRecorder, NoOpMetrics

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from agent_router.circuit_breaker import CircuitBreakerStats, StateChange
    from agent_router.config import Config
    from agent_router.providers.manager import ProviderManager
    from agent_router.providers.models import CompletionResponse

log = logging.getLogger(__name__)

_TASK_PREVIEW_CHARS = 100


@dataclass(frozen=True)
class AgentResponse:
    """A role's answer, attributed to the provider/model that produced it."""

    role: str
    provider: str
    model: str
    content: tuple[ContentBlock, ...]
    usage: Usage | None
    stop_reason: str
    trace_id: str
    duration_ms: int
    fallback_used: bool = False

    @property
    def text(self) -> str:
        """Concatenate the text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


def _preview(task: str) -> str:
    if len(task) <= _TASK_PREVIEW_CHARS:
        return task
    return task[:_TASK_PREVIEW_CHARS] + "..."


def _status_for(exc: BaseException) -> str:
    if isinstance(exc, CircuitOpenError):
        return "circuit_open"
    if isinstance(exc, RateLimitError):
        return "rate_limited"
    if isinstance(exc, ProviderTimeoutError):
        return "timeout"
    return "error"


class RouterEngine:
    """Routes role invocations to providers.

    Example:
        >>> engine = RouterEngine(config, create_provider_manager())
        >>> response = await engine.invoke_agent("coder", "Write a haiku")
        >>> response.text
    """

    def __init__(
        self,
        config: Config,
        providers: ProviderManager,
        *,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics: MetricsRecorder | None = None,
        logger: logging.Logger | None = None,
        enable_fallback: bool = True,
    ) -> None:
        self._config = config
        self._resolver = RoleResolver(config)
        self._providers = providers
        self._providers.update_config(config.providers)
        self._breakers = breakers or CircuitBreakerRegistry()
        self._retry_policy = retry_policy or RetryPolicy()
        self._metrics: MetricsRecorder = metrics or NoOpMetrics()
        self._log = logger or log
        self.enable_fallback = enable_fallback
        self._unsubscribe = self._breakers.on_state_change(self._on_breaker_change)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    async def invoke_agent(
        self,
        role: str,
        task: str,
        *,
        context: str | None = None,
        tools: Sequence[Tool] | None = None,
    ) -> AgentResponse:
        """Run *task* as *role*.

        On failure, a role with a fallback gets exactly one more attempt
        against the fallback provider/model. If that also fails, the
        original failure is raised.

        Raises:
            UnknownRoleError: *role* is not configured.
            AgentRouterError: The provider call (and any fallback) failed.
        """
        trace_id = str(uuid.uuid4())
        start = time.monotonic()
        self._log.info(
            "Invoking agent",
            extra={
                "trace_id": trace_id,
                "role": role,
                "task_preview": _preview(task),
                "has_context": context is not None,
                "has_tools": bool(tools),
            },
        )

        agent = self._resolver.resolve(role)
        self._log.debug(
            "Role resolved",
            extra={
                "trace_id": trace_id,
                "role": role,
                "provider": agent.provider,
                "model": agent.model,
            },
        )
        request = self._build_request(agent, task, context=context, tools=tools)

        try:
            response = await self._call(role, agent.provider, request, trace_id)
        except asyncio.CancelledError:
            raise
        except Exception as primary_error:
            self._log.error(
                "Agent invocation failed: %s",
                primary_error,
                extra={
                    "trace_id": trace_id,
                    "role": role,
                    "provider": agent.provider,
                    "duration_ms": self._elapsed_ms(start),
                },
            )
            fallback = agent.fallback
            if not self.enable_fallback or fallback is None:
                raise

            self._log.info(
                "Attempting fallback provider",
                extra={
                    "trace_id": trace_id,
                    "role": role,
                    "provider": fallback.provider,
                    "model": fallback.model,
                },
            )
            try:
                response = await self._call(
                    role, fallback.provider, replace(request, model=fallback.model), trace_id
                )
            except asyncio.CancelledError:
                raise
            except Exception as fallback_error:
                self._log.error(
                    "Fallback provider failed: %s",
                    fallback_error,
                    extra={
                        "trace_id": trace_id,
                        "role": role,
                        "provider": fallback.provider,
                    },
                )
                raise primary_error from fallback_error
            return self._to_agent_response(
                role,
                fallback.provider,
                fallback.model,
                response,
                trace_id,
                start,
                fallback_used=True,
            )

        return self._to_agent_response(
            role, agent.provider, agent.model, response, trace_id, start
        )

    async def compare_agents(
        self, roles: Iterable[str], task: str, *, context: str | None = None
    ) -> dict[str, AgentResponse]:
        """Run *task* under every role concurrently.

        Roles whose invocation fails are logged and left out of the result.
        """
        role_list = list(dict.fromkeys(roles))
        start = time.monotonic()

        async def attempt(role: str) -> AgentResponse | None:
            try:
                return await self.invoke_agent(role, task, context=context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.warning(
                    "Agent comparison failed for role %s: %s",
                    role,
                    e,
                    extra={"role": role},
                )
                return None

        responses = await asyncio.gather(*(attempt(r) for r in role_list))
        results = {
            role: response
            for role, response in zip(role_list, responses, strict=True)
            if response is not None
        }
        self._log.info(
            "Agent comparison completed",
            extra={
                "total_roles": len(role_list),
                "successful_roles": len(results),
                "duration_ms": self._elapsed_ms(start),
            },
        )
        return results

    def list_roles(self) -> list[str]:
        return self._resolver.list_roles()

    def has_role(self, role: str) -> bool:
        return self._resolver.has_role(role)

    def resolve_role(self, role: str) -> AgentConfig:
        return self._resolver.resolve(role)

    def update_config(self, config: Config) -> None:
        """Apply a new configuration in place; breaker state is kept."""
        self._log.info(
            "Updating router configuration",
            extra={"version": config.version, "role_count": len(config.roles)},
        )
        self._config = config
        self._resolver.update_config(config)
        self._providers.update_config(config.providers)

    def breaker_stats(self) -> dict[str, CircuitBreakerStats]:
        return self._breakers.snapshot()

    async def health_check(self) -> dict[str, bool | BaseException]:
        """Health-check every configured provider."""
        return await self._providers.health_check_all()

    async def aclose(self) -> None:
        """Detach from the breakers and close every provider adapter."""
        self._unsubscribe()
        await self._providers.aclose()

    def _build_request(
        self,
        agent: AgentConfig,
        task: str,
        *,
        context: str | None,
        tools: Sequence[Tool] | None,
    ) -> CompletionRequest:
        blocks: list[ContentBlock] = []
        if context:
            blocks.append(TextBlock(f"<context>\n{context}\n</context>"))
        blocks.append(TextBlock(task))
        return CompletionRequest(
            model=agent.model,
            messages=(Message(role="user", content=tuple(blocks)),),
            system=agent.system_prompt,
            temperature=agent.temperature,
            max_tokens=agent.max_tokens,
            tools=tuple(tools or ()),
            timeout_ms=agent.timeout_ms,
        )

    async def _call(
        self, role: str, provider_name: str, request: CompletionRequest, trace_id: str
    ) -> CompletionResponse:
        start = time.monotonic()
        try:
            adapter = self._providers.get(provider_name)
            breaker = self._breakers.get(provider_name)

            def on_retry(exc: BaseException, attempt: int, delay_ms: int) -> None:
                self._log.warning(
                    "Retrying %s after attempt %d failed: %s",
                    provider_name,
                    attempt,
                    exc,
                    extra={
                        "trace_id": trace_id,
                        "provider": provider_name,
                        "attempt": attempt,
                        "delay_ms": delay_ms,
                    },
                )

            response = await breaker.execute(
                lambda: retry_async(
                    lambda: adapter.complete(request),
                    policy=self._retry_policy,
                    on_retry=on_retry,
                )
            )
        except Exception as e:
            self._record_request(role, provider_name, _status_for(e), start)
            raise

        self._record_request(role, provider_name, "success", start)
        if response.usage is not None:
            self._metrics.increment(
                telemetry.TOKENS_INPUT, response.usage.input_tokens, provider=provider_name
            )
            self._metrics.increment(
                telemetry.TOKENS_OUTPUT, response.usage.output_tokens, provider=provider_name
            )
        return response

    def _record_request(
        self, role: str, provider: str, status: str, start: float
    ) -> None:
        self._metrics.increment(
            telemetry.REQUESTS, role=role, provider=provider, status=status
        )
        self._metrics.observe(
            telemetry.LATENCY_MS, self._elapsed_ms(start), role=role, provider=provider
        )

    def _on_breaker_change(self, change: StateChange) -> None:
        self._metrics.increment(
            telemetry.BREAKER_TRANSITIONS,
            provider=change.name or "unknown",
            previous=change.previous.value,
            current=change.current.value,
        )

    def _to_agent_response(
        self,
        role: str,
        provider: str,
        model: str,
        response: CompletionResponse,
        trace_id: str,
        start: float,
        *,
        fallback_used: bool = False,
    ) -> AgentResponse:
        duration_ms = self._elapsed_ms(start)
        self._log.info(
            "Agent response received",
            extra={
                "trace_id": trace_id,
                "role": role,
                "provider": provider,
                "model": model,
                "duration_ms": duration_ms,
                "stop_reason": response.stop_reason,
                "fallback_used": fallback_used,
            },
        )
        return AgentResponse(
            role=role,
            provider=provider,
            model=model,
            content=response.content,
            usage=response.usage,
            stop_reason=response.stop_reason,
            trace_id=trace_id,
            duration_ms=duration_ms,
            fallback_used=fallback_used,
        )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
