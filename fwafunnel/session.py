"""FunnelSession: the single owner of one funnel's state.

A session holds exactly one FunnelState and applies submissions to it one
at a time. Guards enforced here:
- only one submission may be awaiting an external call at a time;
- a result that arrives after the session was reset or closed is discarded;
- the session expires a fixed time after the first address submission, and
  an expired session is reset to the initial step.

Side effects that must not block the funnel (waitlist enrollment, order
emails) run as background tasks; their failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import time
import uuid

import structlog

from fwafunnel.errors import (
    FunnelError,
    SessionExpiredError,
    StepMismatchError,
    SubmissionInFlightError,
    ValidationError,
)
from fwafunnel.graph import ON_ENTER, default_state, merge, step_funnel
from fwafunnel.state import Step


log = structlog.get_logger(__name__)

DEFAULT_EXPIRES_AFTER_SECONDS = 300
DEFAULT_ABANDON_AFTER_SECONDS = 3600


class FunnelSession:
    """One person's pass through the funnel."""

    def __init__(
        self,
        funnel_config: dict,
        services: dict,
        *,
        session_id: str | None = None,
        clock=time.time,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.funnel_config = funnel_config
        self.services = services
        self._clock = clock
        self._generation = 0
        self._pending: int | None = None
        self._tasks: set[asyncio.Task] = set()
        self._expiry_unreported = False
        self.last_active_at = clock()
        self.state = default_state(self.funnel_id, funnel_config)

    @classmethod
    async def open(
        cls,
        funnel_config: dict,
        services: dict,
        *,
        preselected_plan: str | None = None,
        lead_id: int | None = None,
        session_id: str | None = None,
        clock=time.time,
    ) -> "FunnelSession":
        """Create a session on the initial step."""
        session = cls(funnel_config, services, session_id=session_id, clock=clock)
        await session.reset(preselected_plan=preselected_plan, lead_id=lead_id)
        return session

    @property
    def funnel_id(self) -> str:
        return self.funnel_config.get("funnel_id", "")

    @property
    def step(self) -> Step:
        return Step(self.state["step"])

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    async def reset(
        self,
        *,
        preselected_plan: str | None = None,
        lead_id: int | None = None,
    ) -> dict:
        """Discard all funnel data and return to the initial step.

        A lead_id is only carried over when its stored record exists, qualified
        and has not completed an order; otherwise the funnel starts without one.
        """
        if preselected_plan is not None and preselected_plan not in self.funnel_config["plans"]:
            raise ValidationError(
                "Please choose one of the available plans.", field="preselected_plan"
            )

        self._generation += 1
        self._pending = None
        self._expiry_unreported = False
        self.last_active_at = self._clock()
        generation = self._generation

        lead_record = None
        if lead_id is not None:
            lead_record = await self.services["db"].get_lead(lead_id)
            if (
                lead_record is None
                or not lead_record.get("qualified")
                or lead_record.get("flow_completed")
            ):
                log.info("lead_not_reusable", session_id=self.session_id, lead_id=lead_id)
                lead_record = None
            if generation != self._generation:
                # Reset again while loading the lead
                return self.state

        self.state = default_state(
            self.funnel_id,
            self.funnel_config,
            preselected_plan=preselected_plan,
            lead_record=lead_record,
        )
        log.info(
            "session_reset",
            session_id=self.session_id,
            lead_id=self.state["lead_id"],
            preselected_plan=preselected_plan,
        )
        return self.state

    def close(self) -> None:
        """Invalidate the session; late results of in-flight calls are dropped."""
        self._generation += 1
        self._pending = None
        log.info("session_closed", session_id=self.session_id, step=self.step.value)

    def expired(self) -> bool:
        started = self.state.get("session_started_at")
        if started is None:
            return False
        lifetime = self.funnel_config.get("session", {}).get(
            "expires_after_seconds", DEFAULT_EXPIRES_AFTER_SECONDS
        )
        return self._clock() - started >= lifetime

    def abandoned(self) -> bool:
        """True once nothing has touched the session for the abandon window."""
        if self._pending is not None:
            return False
        window = self.funnel_config.get("session", {}).get(
            "abandon_after_seconds", DEFAULT_ABANDON_AFTER_SECONDS
        )
        return self._clock() - self.last_active_at >= window

    async def expire_if_due(self) -> bool:
        """Reset the session if its lifetime elapsed.

        The expiry is reported to the next submission as SessionExpiredError.
        """
        if self._pending is not None or not self.expired():
            return False
        log.info("session_expired", session_id=self.session_id, step=self.step.value)
        await self.reset()
        self.state = merge(self.state, {"error": SessionExpiredError.user_message})
        self._expiry_unreported = True
        return True

    async def submit(self, data: dict | None, expected_step: str | None = None) -> dict:
        """Submit the form for the current step.

        Args:
            data: Form fields for the current step.
            expected_step: Step the client believes it is on. A mismatch
                raises StepMismatchError.

        Returns:
            The session state after the submission.

        Raises:
            SubmissionInFlightError: Another submission is still running.
            SessionExpiredError: The session expired and was reset.
            FunnelError: The step failed; state keeps the previous step
                with `error` set.
        """
        if self._pending is not None:
            raise SubmissionInFlightError("A submission is already in flight")

        await self.expire_if_due()
        self.last_active_at = self._clock()
        if self._expiry_unreported:
            self._expiry_unreported = False
            raise SessionExpiredError("Session expired and was reset")

        if expected_step is not None and expected_step != self.step.value:
            raise StepMismatchError(expected_step, self.step.value)

        if self.step == Step.ADDRESS and self.state.get("session_started_at") is None:
            self.state = merge(self.state, {"session_started_at": self._clock()})

        generation = self._generation
        self._pending = generation
        before = self.step
        try:
            new_state = await step_funnel(self.state, data, self.services)
        except FunnelError as e:
            if generation != self._generation:
                log.info("stale_error_discarded", session_id=self.session_id, error=str(e))
                return self.state
            log.warning(
                "step_failed",
                session_id=self.session_id,
                step=before.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            self.state = merge(self.state, {**(e.state_update or {}), "error": e.user_message})
            raise
        finally:
            if self._pending == generation:
                self._pending = None

        if generation != self._generation:
            log.info("stale_result_discarded", session_id=self.session_id, step=before.value)
            return self.state

        self.state = new_state
        log.info(
            "step_completed",
            session_id=self.session_id,
            step=before.value,
            next_step=self.step.value,
            lead_id=new_state.get("lead_id"),
        )
        for effect in ON_ENTER.get(self.step, ()):
            self._spawn(effect)
        return self.state

    # -----------------------------------------------------------------------
    # Background tasks
    # -----------------------------------------------------------------------

    def _spawn(self, effect) -> None:
        task = asyncio.get_running_loop().create_task(effect(dict(self.state), self.services))
        task.set_name(f"{self.session_id}:{effect.__name__}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning(
                "background_task_failed",
                session_id=self.session_id,
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait for all background tasks started so far."""
        while self._tasks:
            tasks = list(self._tasks)
            await asyncio.gather(*tasks, return_exceptions=True)
            self._tasks.difference_update(tasks)
