from enum import Enum

import structlog

from shared.observability import hm_saga_compensation_total

logger = structlog.get_logger(__name__)


class SagaState(str, Enum):
    CREATED = "created"
    SCREENED = "screened"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    # The payment attempt failed or was cancelled by the provider; the order is still open
    ENDED = "ended"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class SagaTransitionError(Exception):
    def __init__(self, step: str, state: SagaState):
        super().__init__(f"Step '{step}' cannot run in state '{state.value}'")
        self.step = step
        self.state = state


class SagaStep:
    def __init__(self, name, action, compensation=None, requires=None, reaches=None):
        self.name = name
        self.action = action
        self.compensation = compensation
        # Guard: states the saga must be in for this step to run
        self.requires = set(requires or ())
        self.reaches = reaches


class SagaOrchestrator:
    """
    Runs steps in order over a shared context dict. ctx["state"] holds the
    current SagaState; a step only runs when the state satisfies its guard and
    moves the saga to its `reaches` state when it completes.

    An action that returns False halts the saga without error (for example a
    payment waiting for provider confirmation). Any exception rolls back the
    executed steps in reverse order and is re-raised.
    """

    def __init__(self):
        self.steps = []

    def add_step(self, name: str, action, compensation=None, requires=None, reaches=None):
        """Builder pattern to add a step and its rollback compensation."""
        self.steps.append(SagaStep(name, action, compensation, requires, reaches))
        return self

    async def execute(self, ctx: dict) -> bool:
        """True when every step ran, False when a step halted the saga."""
        executed_steps = []
        step = None
        try:
            for step in self.steps:
                state = ctx["state"]
                if step.requires and state not in step.requires:
                    raise SagaTransitionError(step.name, state)

                advanced = await step.action(ctx)
                executed_steps.append(step)
                if advanced is False:
                    logger.info("saga_halted", step=step.name, state=ctx["state"].value)
                    return False
                if step.reaches is not None:
                    ctx["state"] = step.reaches
            return True
        except Exception as e:
            logger.error("saga_step_failed", step=step.name if step else None, error=str(e))
            await self._rollback(executed_steps, ctx)
            raise

    async def _rollback(self, executed_steps: list, ctx: dict):
        """Executes compensations in reverse order. Wraps each in a try/except."""
        logger.info("saga_rollback_started", steps=[s.name for s in executed_steps])
        for step in reversed(executed_steps):
            if step.compensation:
                try:
                    await step.compensation(ctx)
                    logger.info("saga_compensation_succeeded", step=step.name)
                    hm_saga_compensation_total.labels(step_name=step.name).inc()
                except Exception:
                    # A failing compensation must not block the others
                    logger.critical("saga_compensation_failed", step=step.name, exc_info=True)
