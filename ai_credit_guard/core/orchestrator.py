"""
Request orchestration for billed generation endpoints.

Each endpoint runs the same state machine:

    Received -> ReplayCheck -> LimitCheck -> PriceAndReserve
             -> Executing -> Settling -> Responding

with two terminal exits: Rejected (validation, quota, budget or credit
refusal, raised before anything is charged) and Failed (generation error,
raised after the reservation has been rolled back).

Invariants:
- No committed ledger entry without a successful generation
- No charged credits without a committed entry
- A response is cached only after its ledger entry is committed
"""

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ai_credit_guard.config.loader import ServiceConfig
from ai_credit_guard.sdk.backend import ChatTurn, GenerationBackend
from ai_credit_guard.storage.idempotency import IdempotencyCache, build_request_id
from ai_credit_guard.storage.ledger import CreditLedger
from ai_credit_guard.storage.models import LedgerStatus, ReserveResult
from ai_credit_guard.storage.repository import UsageRepository

from .errors import (
    CreditGuardError,
    InsufficientCredits,
    RequestConflict,
    RequestValidationError,
    UpstreamFailure,
)
from .guardrails import LimitDecision, QuotaEvaluator, start_of_utc_week
from .identity import JWTTokenVerifier, RequestIdentity, TokenVerifier, resolve_identity
from .pricing import CHAT_MODES, estimate_image_usd, estimate_text_usd, price_credits
from .system_prompt import build_image_prompt, build_system_instruction

logger = logging.getLogger(__name__)

CHAT_ENDPOINT = "ai-chat"
IMAGE_ENDPOINT = "ai-image"
AUDIO_ENDPOINT = "ai-audio"

IMAGE_QUALITIES = ("standard", "high_quality")
HISTORY_WINDOW = 8
FALLBACK_REPLY = "Sorry, I could not produce a useful answer right now."


@dataclass(frozen=True)
class ChatRequest:
    mode: Any
    message: Any
    idempotency_key: Any
    conversation_id: Optional[str] = None
    history: Any = None
    deep_dive: bool = False


@dataclass(frozen=True)
class ImageRequest:
    prompt: Any
    idempotency_key: Any
    conversation_id: Optional[str] = None
    quality: Any = None


@dataclass(frozen=True)
class AudioRequest:
    text: Any
    idempotency_key: Any
    conversation_id: Optional[str] = None
    voice_name: Optional[str] = None


@dataclass
class _Reservation:
    """Everything settled after a successful reserve."""
    endpoint: str
    identity: RequestIdentity
    idempotency_key: str
    request_id: str
    credits: int
    result: ReserveResult
    metadata: Dict[str, Any] = field(default_factory=dict)


def normalize_history(history: Any) -> List[ChatTurn]:
    """Keep the last few well-formed user/assistant turns."""
    if not isinstance(history, list):
        return []
    turns = []
    for item in history:
        if not isinstance(item, Mapping):
            continue
        role = item.get("role")
        content = item.get("content")
        if role in ("user", "assistant") and isinstance(content, str):
            turns.append(ChatTurn(role=role, content=content))
    return turns[-HISTORY_WINDOW:]


def _required_text(value: Any, error_code: str) -> str:
    text = str(value if value is not None else "").strip()
    if not text:
        raise RequestValidationError(error_code)
    return text


class RequestOrchestrator:
    """Sequences identity, replay, limits, pricing, reservation and settlement.

    Holds no per-request state; every collaborator is passed in explicitly.
    """

    def __init__(
        self,
        config: ServiceConfig,
        ledger: CreditLedger,
        repository: UsageRepository,
        cache: IdempotencyCache,
        backend: GenerationBackend,
        verifier: Optional[TokenVerifier] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.repository = repository
        self.cache = cache
        self.backend = backend
        self.verifier = verifier
        self.evaluator = QuotaEvaluator(repository, plan_id=config.billing.plan_id)

    # -- shared steps -------------------------------------------------------

    def _replay(self, endpoint: str, identity: RequestIdentity, idempotency_key: str) -> Optional[Dict[str, Any]]:
        cached = self.cache.get(endpoint, identity.scope_key, idempotency_key)
        if cached is None:
            return None
        logger.info("Replaying cached %s response for %s", endpoint, identity.scope_key)
        return {**cached, "idempotentReplay": True}

    def _reserve(
        self,
        endpoint: str,
        identity: RequestIdentity,
        idempotency_key: str,
        *,
        operation: str,
        mode: str,
        model: str,
        model_tier: str,
        credits: int,
        is_image: bool,
        metadata: Dict[str, Any],
    ) -> _Reservation:
        request_id = build_request_id(endpoint, identity.scope_key, idempotency_key)
        if identity.is_demo:
            result = self.ledger.reserve_demo_credits(
                device_fingerprint=identity.device_fingerprint,
                request_id=request_id,
                operation=operation,
                mode=mode,
                model=model,
                model_tier=model_tier,
                credits=credits,
                is_image=is_image,
                metadata=metadata,
            )
        else:
            result = self.ledger.reserve_user_credits(
                user_id=identity.user_id,
                request_id=request_id,
                operation=operation,
                mode=mode,
                model=model,
                model_tier=model_tier,
                credits=credits,
                metadata=metadata,
            )
        return _Reservation(endpoint, identity, idempotency_key, request_id, credits, result, metadata)

    def _refused(self, reservation: _Reservation) -> Dict[str, Any]:
        """Turn a refused reservation into a replay or a rejection."""
        result = reservation.result
        details = {
            "creditsRemaining": result.credits_remaining,
            "imageQuotaRemaining": result.images_remaining,
            "isDemo": reservation.identity.is_demo,
        }
        if result.duplicate:
            if result.ledger_status == LedgerStatus.COMMITTED:
                replay = self._replay(reservation.endpoint, reservation.identity, reservation.idempotency_key)
                if replay is not None:
                    return replay
            raise RequestConflict(result.error_code, details=details)
        raise InsufficientCredits(result.error_code or "INSUFFICIENT_CREDITS", details=details)

    def _rollback(self, reservation: _Reservation, reason: str) -> None:
        try:
            self.ledger.rollback(reservation.request_id, reason)
        except CreditGuardError:
            logger.error("Rollback of %s failed; reservation left pending", reservation.request_id)
            raise

    def _execute(self, reservation: _Reservation, failure_code: str, rollback_reason: str, generate: Callable[[], Any]) -> Any:
        """Run the external call; any failure refunds the reservation."""
        try:
            return generate()
        except Exception as e:
            logger.warning("Generation failed for %s: %s", reservation.request_id, e)
            self._rollback(reservation, rollback_reason)
            raise UpstreamFailure(
                failure_code,
                str(e),
                details={
                    "message": str(e),
                    "creditsRemaining": self._current_credits(reservation.identity),
                    "isDemo": reservation.identity.is_demo,
                },
            ) from e

    def _settle(
        self,
        reservation: _Reservation,
        failure_code: str,
        rollback_reason: str,
        build: Callable[[], Tuple[Dict[str, Any], Dict[str, Any]]],
    ) -> Dict[str, Any]:
        """Build the response, commit the ledger entry, then cache the response.

        ``build`` returns the response body and the usage figures passed to
        ``CreditLedger.commit``. A failure in either step refunds the
        reservation.
        """
        try:
            response, charge = build()
            self.ledger.commit(reservation.request_id, **charge)
        except Exception as e:
            logger.error("Settlement failed for %s: %s", reservation.request_id, e)
            self._rollback(reservation, rollback_reason)
            raise UpstreamFailure(
                failure_code,
                str(e),
                details={
                    "message": str(e),
                    "creditsRemaining": self._current_credits(reservation.identity),
                    "isDemo": reservation.identity.is_demo,
                },
            ) from e

        self.cache.save(
            reservation.endpoint,
            reservation.identity.scope_key,
            reservation.idempotency_key,
            response,
        )
        return {**response, "idempotentReplay": False}

    def _current_credits(self, identity: RequestIdentity) -> Optional[int]:
        try:
            if identity.is_demo:
                return self.repository.get_or_create_demo_session(identity.device_fingerprint).credits_remaining
            return self.repository.get_balance(identity.user_id)
        except CreditGuardError:
            return None

    def _base_response(self, reservation: _Reservation, model: str, mode: str) -> Dict[str, Any]:
        result = reservation.result
        return {
            "creditsCharged": reservation.credits,
            "creditsRemaining": result.credits_remaining,
            "imageQuotaRemaining": result.images_remaining,
            "modelUsed": model,
            "modeUsed": mode,
            "isDemo": reservation.identity.is_demo,
        }

    # -- endpoints ----------------------------------------------------------

    def handle_chat(self, headers: Mapping[str, str], request: ChatRequest) -> Dict[str, Any]:
        """Serve a conversational reply.

        Args:
            headers: Request headers used to resolve identity
            request: Chat payload

        Returns:
            Response payload (fresh or replayed)

        Raises:
            RequestValidationError: On an invalid mode, empty message or missing key
            QuotaExceeded: If the daily message cap is reached
            InsufficientCredits: If the balance cannot cover the price
            RequestConflict: If the same key is already being processed
            UpstreamFailure: If generation failed (after refund)
            StorageFailure: If the store is unreachable
        """
        if request.mode not in CHAT_MODES:
            raise RequestValidationError("INVALID_MODE")
        message = _required_text(request.message, "EMPTY_MESSAGE")
        idempotency_key = _required_text(request.idempotency_key, "MISSING_IDEMPOTENCY_KEY")

        identity = resolve_identity(headers, self.verifier)
        replay = self._replay(CHAT_ENDPOINT, identity, idempotency_key)
        if replay is not None:
            return replay

        requested_tier = "deep_dive" if request.mode == "researcher" and request.deep_dive else "stable"
        decision: LimitDecision = self.evaluator.evaluate_chat_limits(identity, request.mode, requested_tier)
        mode, model_tier = decision.effective_mode, decision.model_tier
        downgraded = decision.downgraded_by_soft_cap

        model = self.config.models.text_model_for(mode, model_tier)
        credits = price_credits("chat", mode, model_tier, self.config.billing.plan_id, self.config.pricing)

        reservation = self._reserve(
            CHAT_ENDPOINT,
            identity,
            idempotency_key,
            operation="chat",
            mode=mode,
            model=model,
            model_tier=model_tier,
            credits=credits,
            is_image=False,
            metadata={
                "conversationId": request.conversation_id,
                "originalMode": request.mode,
                "effectiveMode": mode,
                "downgradedBySoftCap": downgraded,
            },
        )
        if not reservation.result.success:
            return self._refused(reservation)

        history = normalize_history(request.history)
        generation = self._execute(
            reservation,
            "AI_CHAT_FAILED",
            "GENERATION_CHAT_ERROR",
            lambda: self.backend.generate_text(
                model=model,
                system_instruction=build_system_instruction(mode),
                history=history,
                message=message,
                use_search=mode == "researcher",
            ),
        )

        def build():
            usage = generation.usage
            response = {
                "assistantMessage": generation.text or FALLBACK_REPLY,
                "sources": list(generation.sources),
                "usage": {**usage.to_payload(), "groundedQueries": usage.grounded_queries},
                **self._base_response(reservation, model, mode),
                "downgradedBySoftCap": downgraded,
            }
            return response, {
                "tokens_in": usage.tokens_in,
                "tokens_out": usage.tokens_out,
                "grounded_queries": usage.grounded_queries,
                "image_count": 0,
                "usd_estimate": estimate_text_usd(model, usage.tokens_in, usage.tokens_out, self.config.pricing),
                "metadata": {"demoSessionId": reservation.result.demo_session_id},
            }

        return self._settle(reservation, "AI_CHAT_FAILED", "GENERATION_CHAT_ERROR", build)

    def handle_image(self, headers: Mapping[str, str], request: ImageRequest) -> Dict[str, Any]:
        """Generate an illustration.

        Demo sessions pay with their image quota rather than credits.

        Raises:
            RequestValidationError: On an empty prompt or missing key
            QuotaExceeded: If the weekly image cap is reached
            BudgetBlocked: If the user is over the soft USD cap
            InsufficientCredits: If credits or image quota are exhausted
            UpstreamFailure: If generation failed (after refund)
        """
        prompt = _required_text(request.prompt, "EMPTY_PROMPT")
        idempotency_key = _required_text(request.idempotency_key, "MISSING_IDEMPOTENCY_KEY")
        quality = request.quality if request.quality in IMAGE_QUALITIES else "standard"

        identity = resolve_identity(headers, self.verifier)
        replay = self._replay(IMAGE_ENDPOINT, identity, idempotency_key)
        if replay is not None:
            return replay

        self.evaluator.evaluate_image_limits(identity, quality)

        model = self.config.models.image_model_for(quality)
        credits = price_credits("image", "visionary", quality, self.config.billing.plan_id, self.config.pricing)
        if identity.is_demo:
            credits = 0

        reservation = self._reserve(
            IMAGE_ENDPOINT,
            identity,
            idempotency_key,
            operation="image",
            mode="visionary",
            model=model,
            model_tier=quality,
            credits=credits,
            is_image=True,
            metadata={"conversationId": request.conversation_id, "quality": quality},
        )
        if not reservation.result.success:
            return self._refused(reservation)

        generation = self._execute(
            reservation,
            "AI_IMAGE_FAILED",
            "GENERATION_IMAGE_ERROR",
            lambda: self.backend.generate_image(model=model, prompt=build_image_prompt(prompt), quality=quality),
        )

        def build():
            encoded = base64.b64encode(generation.image_bytes).decode("ascii")
            usage = generation.usage
            response = {
                "imageUrlOrBase64": f"data:{generation.mime_type};base64,{encoded}",
                "usage": {**usage.to_payload(), "imageCount": 1},
                **self._base_response(reservation, model, "visionary"),
            }
            return response, {
                "tokens_in": usage.tokens_in,
                "tokens_out": usage.tokens_out,
                "grounded_queries": 0,
                "image_count": 1,
                "usd_estimate": estimate_image_usd(model, quality, self.config.pricing),
                "metadata": {"quality": quality},
            }

        return self._settle(reservation, "AI_IMAGE_FAILED", "GENERATION_IMAGE_ERROR", build)

    def handle_audio(self, headers: Mapping[str, str], request: AudioRequest) -> Dict[str, Any]:
        """Narrate text; billed as a standard mentor chat message."""
        text = _required_text(request.text, "EMPTY_TEXT")
        idempotency_key = _required_text(request.idempotency_key, "MISSING_IDEMPOTENCY_KEY")
        if request.voice_name is not None and not isinstance(request.voice_name, str):
            raise RequestValidationError("INVALID_VOICE")
        voice = (request.voice_name or "").strip() or self.config.models.tts_voice

        identity = resolve_identity(headers, self.verifier)
        replay = self._replay(AUDIO_ENDPOINT, identity, idempotency_key)
        if replay is not None:
            return replay

        model = self.config.models.tts
        credits = price_credits("chat", "mentor", "stable", self.config.billing.plan_id, self.config.pricing)

        reservation = self._reserve(
            AUDIO_ENDPOINT,
            identity,
            idempotency_key,
            operation="chat",
            mode="mentor",
            model=model,
            model_tier="stable",
            credits=credits,
            is_image=False,
            metadata={"conversationId": request.conversation_id, "type": "audio"},
        )
        if not reservation.result.success:
            return self._refused(reservation)

        generation = self._execute(
            reservation,
            "AI_AUDIO_FAILED",
            "GENERATION_AUDIO_ERROR",
            lambda: self.backend.generate_audio(model=model, text=text, voice=voice),
        )

        def build():
            usage = generation.usage
            response = {
                "audioBase64": base64.b64encode(generation.audio_bytes).decode("ascii"),
                "mimeType": generation.mime_type,
                "usage": usage.to_payload(),
                **self._base_response(reservation, model, "mentor"),
            }
            return response, {
                "tokens_in": usage.tokens_in,
                "tokens_out": usage.tokens_out,
                "grounded_queries": 0,
                "image_count": 0,
                "usd_estimate": estimate_text_usd(model, usage.tokens_in, usage.tokens_out, self.config.pricing),
                "metadata": {"type": "audio", "voiceName": voice},
            }

        return self._settle(reservation, "AI_AUDIO_FAILED", "GENERATION_AUDIO_ERROR", build)

    def get_balance(self, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Report remaining credits, quotas and budget for the caller."""
        identity = resolve_identity(headers, self.verifier)
        limits = self.repository.get_usage_limits(self.config.billing.plan_id)

        if identity.is_demo:
            session = self.repository.get_or_create_demo_session(identity.device_fingerprint)
            return {
                "creditsRemaining": session.credits_remaining,
                "periodEnd": _iso(session.expires_at),
                "imageQuotaRemaining": session.images_remaining,
                "weeklyImageLimit": self.config.demo.images,
                "dailyMessageLimit": limits.daily_messages,
                "softUsdCap": None,
                "budgetConsumedUsd": None,
                "budgetPeriodDays": None,
                "isDemo": True,
            }

        now = self.repository.clock()
        week_start = start_of_utc_week(now)
        images_used = self.repository.count_committed(identity.scope_key, "image", week_start)
        budget = self.repository.get_budget_status(identity.user_id, limits)
        return {
            "creditsRemaining": self.repository.get_balance(identity.user_id),
            "periodEnd": _iso(week_start + timedelta(days=7) - timedelta(milliseconds=1)),
            "imageQuotaRemaining": max(0, limits.weekly_images - images_used),
            "weeklyImageLimit": limits.weekly_images,
            "dailyMessageLimit": limits.daily_messages,
            "softUsdCap": limits.soft_usd_cap,
            "budgetConsumedUsd": budget.total_usd,
            "budgetPeriodDays": budget.period_days,
            "isDemo": False,
        }


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def build_orchestrator(
    config: ServiceConfig,
    backend: Optional[GenerationBackend] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> RequestOrchestrator:
    """Wire the store handles, verifier and backend described by a config.

    Args:
        config: Service configuration
        backend: Generation backend (defaults to the OpenAI backend)
        clock: Optional time source shared by every store handle

    Returns:
        Ready-to-use RequestOrchestrator
    """
    time_kwargs = {"clock": clock} if clock is not None else {}
    db = config.database
    demo = config.demo
    ledger = CreditLedger(
        db.path,
        wallet_starting_credits=config.billing.wallet_starting_credits,
        demo_credits=demo.credits,
        demo_images=demo.images,
        demo_session_days=demo.session_days,
        busy_timeout=db.busy_timeout_seconds,
        **time_kwargs
    )
    repository = UsageRepository(
        db.path,
        default_limits=config.limits,
        wallet_starting_credits=config.billing.wallet_starting_credits,
        demo_credits=demo.credits,
        demo_images=demo.images,
        demo_session_days=demo.session_days,
        busy_timeout=db.busy_timeout_seconds,
        **time_kwargs
    )
    cache = IdempotencyCache(db.path, busy_timeout=db.busy_timeout_seconds, **time_kwargs)

    if backend is None:
        from ai_credit_guard.sdk.openai_backend import OpenAIGenerationBackend
        backend = OpenAIGenerationBackend(timeout=config.billing.generation_timeout_seconds)

    verifier = None
    if config.auth.jwt_secret:
        verifier = JWTTokenVerifier(
            config.auth.jwt_secret,
            algorithms=config.auth.jwt_algorithms,
            audience=config.auth.jwt_audience,
        )
    return RequestOrchestrator(config, ledger, repository, cache, backend, verifier)
