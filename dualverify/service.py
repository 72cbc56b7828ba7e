"""VerificationService: the explicit owner of every verification component.

One instance is constructed per process and injected into callers; there
is no module-level state.
"""

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

from .audit.log import AlertCallback, AuditLog
from .audit.store import AuditStore
from .config import VerificationConfig
from .costs.tracker import CostTracker
from .errors import DualVerifyError, ProviderError
from .logging_config import get_logger
from .metrics.service import HealthStatus, MetricsService, MetricsSnapshot
from .models.events import CompleteEvent, ErrorEvent, StreamEvent, StreamEventKind
from .models.verification import Message, VerificationRequest, VerificationResult
from .providers.base import Provider
from .providers.client import ProviderClient
from .security.monitor import SecurityMonitor
from .verification.orchestrator import VerificationOrchestrator
from .verification.retry import RetryController
from .verification.scorer import ResponseScorer

logger = get_logger(__name__)

PROBE_TIMEOUT_SECONDS = 10.0
MAINTENANCE_INTERVAL_SECONDS = 60.0


class VerificationService:
    """Verify AI responses with a second, independent provider.

    Usage:
        async with VerificationService(primary, verifier) as service:
            result = await service.verify(
                VerificationRequest.from_text("cv-parser", "Summarize this CV ...")
            )
    """

    def __init__(
        self,
        primary: Provider,
        verifier: Provider,
        config: VerificationConfig | None = None,
        audit_store: AuditStore | None = None,
        security: SecurityMonitor | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        alert_callback: AlertCallback | None = None,
    ):
        """Wire up the service.

        Args:
            primary: Provider that generates candidate responses
            verifier: Independent provider that scores them
            config: Service configuration (validated here)
            audit_store: Backing store for audit entries (in-memory when omitted)
            security: Pre-built security monitor (built from config when omitted)
            rng: Random source for backoff jitter
            sleep: Awaitable sleep used for backoff
            alert_callback: Notified when audit entries hit the fallback sink
        """
        self.config = config or VerificationConfig()
        self.config.ensure_valid()

        self.primary = primary
        self.verifier = verifier
        self.security = security or SecurityMonitor(
            self.config.rate_limiting, sanitize_logs=self.config.sanitize_logs_for_pii
        )
        self.costs = CostTracker()
        self.metrics = MetricsService(
            self.config.metrics,
            block_count=self.security.block_count,
            cost_summary=self.costs.to_dict,
        )
        self.audit = AuditLog(
            audit_store,
            self.config.audit,
            sanitizer=self.security.sanitize_for_log,
            alert_callback=alert_callback,
        )
        self.retry = RetryController(
            self.config.base_delay_seconds, self.config.max_delay_seconds, rng
        )

        def client(provider: Provider) -> ProviderClient:
            self.metrics.register_provider(provider.name)
            return ProviderClient(
                provider,
                max_retries=self.config.provider_max_retries,
                backoff=self.retry.backoff_delay,
                cost_tracker=self.costs,
                on_call=self.metrics.record_provider_call,
                sleep=sleep,
            )

        self.primary_client = client(primary)
        self.verifier_client = client(verifier)
        self.scorer = ResponseScorer(self.verifier_client, self.config, pii_detector=self.security.pii)
        self.orchestrator = VerificationOrchestrator(
            primary=self.primary_client,
            scorer=self.scorer,
            retry=self.retry,
            security=self.security,
            audit=self.audit,
            metrics=self.metrics,
            config=self.config,
            sleep=sleep,
        )
        self._maintenance_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: VerificationConfig | None = None, **kwargs) -> "VerificationService":
        """Build the default stack: Claude primary, OpenAI-compatible verifier, SQLite audit."""
        from .providers.claude import ClaudeAgentProvider
        from .providers.openai_compat import OpenAICompatibleProvider
        from .storage.database import SQLiteAuditStore

        config = config or VerificationConfig.from_env()
        return cls(
            primary=ClaudeAgentProvider(model=config.primary_model, timeout_seconds=config.timeout_seconds),
            verifier=OpenAICompatibleProvider(model=config.verification_model, timeout_seconds=config.timeout_seconds),
            config=config,
            audit_store=kwargs.pop("audit_store", None) or SQLiteAuditStore(config.audit.db_path),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.audit.start()
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info(
            "Verification service started: env=%s primary=%s verifier=%s enabled=%s",
            self.config.environment,
            self.primary.name,
            self.verifier.name,
            self.config.verification_enabled,
        )

    async def stop(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        await self.audit.stop()
        await self.primary.aclose()
        await self.verifier.aclose()
        logger.info("Verification service stopped")

    async def __aenter__(self) -> "VerificationService":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)
            removed = self.security.prune_expired()
            if removed:
                logger.debug("Pruned %d idle rate-limit entries", removed)

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    async def verify(self, request: VerificationRequest, on_event=None) -> VerificationResult:
        """Verify one request. See ``VerificationOrchestrator.verify`` for errors."""
        return await self.orchestrator.verify(request, on_event=on_event)

    async def stream_verify(
        self,
        request: VerificationRequest,
        buffer_size: int = 32,
    ) -> AsyncIterator[StreamEvent]:
        """Yield progress and verification events, then one complete or error event."""
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=buffer_size)

        async def run() -> None:
            try:
                result = await self.verify(request, on_event=queue.put)
            except DualVerifyError as e:
                await queue.put(ErrorEvent(request.request_id, e))
                return
            except Exception as e:
                # The error event is the only report the consumer gets
                logger.error("Streamed verification %s failed", request.request_id, exc_info=True)
                await queue.put(ErrorEvent(request.request_id, e))
                return
            await queue.put(CompleteEvent(request.request_id, result))

        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                yield event
                if event.kind in (StreamEventKind.COMPLETE, StreamEventKind.ERROR):
                    break
        finally:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def verify_batch(
        self,
        requests: Sequence[VerificationRequest],
        max_concurrency: int = 3,
    ) -> list[VerificationResult | DualVerifyError]:
        """Verify independent requests with bounded concurrency.

        Returns:
            One entry per request in input order: the result, or the error it raised
        """
        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def one(request: VerificationRequest) -> VerificationResult | DualVerifyError:
            async with semaphore:
                try:
                    return await self.verify(request)
                except DualVerifyError as e:
                    return e

        return list(await asyncio.gather(*(one(r) for r in requests)))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def health_status(self) -> HealthStatus:
        return self.metrics.health_check()

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self.metrics.get_snapshot()

    def prometheus_metrics(self) -> bytes:
        return self.metrics.export_prometheus()

    async def probe_providers(self) -> dict[str, bool]:
        """Send a minimal request to each provider and record reachability."""
        results = {}
        probe = [Message(role="user", content="Reply with OK.")]
        for provider in (self.primary, self.verifier):
            try:
                await asyncio.wait_for(
                    provider.generate(probe, {"max_tokens": 5}), timeout=PROBE_TIMEOUT_SECONDS
                )
            except (ProviderError, asyncio.TimeoutError, OSError) as e:
                logger.warning("Provider probe failed for %s: %s", provider.name, e)
                self.metrics.set_provider_reachability(provider.name, False, str(e))
                results[provider.name] = False
                continue
            self.metrics.set_provider_reachability(provider.name, True)
            results[provider.name] = True
        return results

    def describe(self) -> dict:
        """Active non-secret configuration and component summary."""
        return {
            "environment": self.config.environment,
            "verification_enabled": self.config.verification_enabled,
            "providers": {
                "primary": {"name": self.primary.name, "model": self.primary.model},
                "verification": {"name": self.verifier.name, "model": self.verifier.model},
            },
            "config": self.config.to_dict(),
        }
