"""Step interpreter: runs a parsed script against one page target."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..cdp.errors import CdpError, SessionDetached
from ..commands import ExecutionResult
from ..config import AgentConfig
from ..errors import (
    AutomationError,
    Cancelled,
    ElementNotFound,
    SessionLost,
    StepFailed,
)
from ..resolver.resolver import ElementResolver
from .conditions import evaluate_condition
from .handlers import HANDLERS, STRUCTURAL_KINDS, Handler, StepEnv
from .params import merge_variables, substitute, substitute_text
from .script import LoopSpec, Script, Step, StepKind

logger = logging.getLogger("deskagent.flow")

ProgressSink = Callable[[dict[str, Any]], Any]


@dataclass
class ExecutionContext:
    """Run state for one script execution. Owned by a single ``run`` call."""

    script_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    current_step_index: int = 0
    session_handle: Any | None = None
    started_at: float = field(default_factory=time.time)
    cancelled: bool = False
    steps_completed: int = 0
    reattaches: int = 0
    last_focused: str | None = None
    progress: ProgressSink | None = None

    def cancel(self) -> None:
        self.cancelled = True


def _truthy_flag(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.strip().lower() == "true")


class StepInterpreter:
    def __init__(
        self,
        sessions: Any,
        *,
        config: AgentConfig | None = None,
        resolver: ElementResolver | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        self.sessions = sessions
        self.config = config or AgentConfig()
        self.resolver = resolver or ElementResolver(self.config.clickable)
        self.progress = progress
        self._handlers: dict[StepKind, Handler] = dict(HANDLERS)
        missing = [k.value for k in StepKind if k not in self._handlers and k not in STRUCTURAL_KINDS]
        if missing:
            raise RuntimeError(f"No handler registered for step kinds: {missing}")
        self._sink_tasks: set[asyncio.Task] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Entry point
    # ─────────────────────────────────────────────────────────────────────────

    async def run(
        self,
        script: Script,
        override_params: dict[str, Any] | None = None,
        *,
        target: str | None = None,
        context: ExecutionContext | None = None,
        progress: ProgressSink | None = None,
    ) -> ExecutionResult:
        """Run ``script`` and report the outcome. Never raises for script failures."""
        overrides = dict(override_params or {})
        ctx = context or ExecutionContext(script_id=script.script_id)
        ctx.variables = merge_variables(script.parameters, overrides)
        ctx.progress = progress if progress is not None else self.progress
        detach_after = _truthy_flag(overrides.get("detachDebugger"))

        raw_target = target or overrides.get("targetUrl") or script.target_url
        if not isinstance(raw_target, str) or not raw_target.strip():
            return ExecutionResult.failed(ElementNotFound("Script has no target page"), script_id=ctx.script_id)
        raw_target = substitute_text(raw_target.strip(), ctx.variables)

        logger.info("run script=%s target=%s steps=%d", ctx.script_id, raw_target, len(script.steps))
        target_id: str | None = None
        try:
            try:
                target_id = await self.sessions.resolve_target(raw_target)
            except CdpError as exc:
                raise SessionLost(f"Could not reach target {raw_target}: {exc}") from exc
            async with self.sessions.script_lease(target_id, ctx):
                ctx.session_handle = await self.sessions.ensure_attached(target_id)
                env = StepEnv(self.sessions, target_id, self.resolver, self.config, ctx)
                try:
                    await self._run_steps(script.steps, env, ())
                finally:
                    if detach_after:
                        with contextlib.suppress(CdpError, AutomationError):
                            await self.sessions.detach(target_id)
        except AutomationError as exc:
            logger.warning("script %s failed: %s", ctx.script_id, exc)
            return ExecutionResult.failed(
                exc,
                script_id=ctx.script_id,
                tab_id=target_id,
                steps_completed=ctx.steps_completed,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("script %s crashed", ctx.script_id)
            return ExecutionResult.failed(
                AutomationError(f"{type(exc).__name__}: {exc}"),
                script_id=ctx.script_id,
                tab_id=target_id,
                steps_completed=ctx.steps_completed,
            )
        logger.info("script %s completed (%d steps)", ctx.script_id, ctx.steps_completed)
        return ExecutionResult.ok(script_id=ctx.script_id, tab_id=target_id, steps_completed=ctx.steps_completed)

    # ─────────────────────────────────────────────────────────────────────────
    # Step loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_steps(self, steps: list[Step], env: StepEnv, path: tuple[int, ...]) -> None:
        for index, step in enumerate(steps):
            step_path = (*path, index)
            if env.context.cancelled:
                raise Cancelled(f"Cancelled before step {_fmt_path(step_path)}", {"path": list(step_path)})
            if not path:
                env.context.current_step_index = index
            await self._run_step(step, env, step_path)

    async def _run_step(self, step: Step, env: StepEnv, path: tuple[int, ...]) -> None:
        ctx = env.context
        try:
            if step.condition is not None:
                condition = substitute(step.condition, ctx.variables)
                holds = await self._with_reattach(
                    env, lambda: evaluate_condition(condition, env.page, env.resolver)
                )
                if not holds:
                    logger.info("skipping step %s (%s): condition not met", _fmt_path(path), step.kind.value)
                    return

            payload = substitute(step.raw, ctx.variables)
            logger.debug("step %s: %s", _fmt_path(path), step.kind.value)
            if step.kind in STRUCTURAL_KINDS:
                await self._run_steps(step.steps, env, path)
            else:
                handler = self._handlers[step.kind]
                await self._with_reattach(env, lambda: handler(step, payload, env))

            if self.config.debug_delay_ms > 0:
                await asyncio.sleep(self.config.debug_delay_ms / 1000.0)
            wait_after = payload.get("waitAfter")
            if isinstance(wait_after, (int, float, str)) and not isinstance(wait_after, bool):
                with contextlib.suppress(ValueError):
                    if float(wait_after) > 0:
                        await asyncio.sleep(float(wait_after) / 1000.0)
        except (StepFailed, Cancelled):
            raise
        except SessionLost as exc:
            if "path" in exc.details:
                raise
            details = {**exc.details, "stepIndex": path[0], "kind": step.kind.value, "path": list(path)}
            raise SessionLost(exc.reason, details) from exc
        except AutomationError as exc:
            raise self._step_failed(step, path, exc.reason, exc.code, exc.details) from exc
        except CdpError as exc:
            raise self._step_failed(step, path, str(exc), "ProtocolError") from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("step %s (%s) crashed", _fmt_path(path), step.kind.value)
            raise self._step_failed(step, path, f"{type(exc).__name__}: {exc}", type(exc).__name__) from exc

        ctx.steps_completed += 1
        self._emit(
            ctx.progress,
            {"scriptId": ctx.script_id, "stepIndex": path[0], "kind": step.kind.value, "path": list(path)},
        )

        if step.loop is not None:
            await self._run_loop(step, step.loop, env, path)

    async def _run_loop(self, step: Step, loop: LoopSpec, env: StepEnv, path: tuple[int, ...]) -> None:
        ctx = env.context
        iterations = loop.iterations
        if loop.iterations_template is not None:
            resolved = substitute_text(loop.iterations_template, ctx.variables)
            try:
                iterations = max(0, int(resolved))
            except ValueError:
                raise self._step_failed(
                    step, path, f"loop iterations {resolved!r} is not a number", "MalformedScript"
                ) from None
        for iteration in range(iterations):
            if ctx.cancelled:
                raise Cancelled(
                    f"Cancelled before loop iteration {iteration} of step {_fmt_path(path)}",
                    {"path": list(path), "iteration": iteration},
                )
            if loop.condition is not None:
                condition = substitute(loop.condition, ctx.variables)
                try:
                    holds = await self._with_reattach(
                        env, lambda: evaluate_condition(condition, env.page, env.resolver)
                    )
                except SessionLost:
                    raise
                except (AutomationError, CdpError) as exc:
                    raise self._step_failed(step, path, f"loop condition failed: {exc}", "ConditionError") from exc
                if not holds:
                    logger.info("loop at step %s stopped after %d iteration(s)", _fmt_path(path), iteration)
                    return
            ctx.variables["loopIndex"] = iteration
            await self._run_steps(loop.steps, env, path)
            if loop.wait_between_ms > 0 and iteration < iterations - 1:
                await asyncio.sleep(loop.wait_between_ms / 1000.0)

    # ─────────────────────────────────────────────────────────────────────────
    # Session recovery
    # ─────────────────────────────────────────────────────────────────────────

    async def _with_reattach(self, env: StepEnv, op: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``op``; after an unexpected detach, wait for the reattach and retry once."""
        ctx = env.context
        while True:
            handle = ctx.session_handle
            try:
                return await op()
            except SessionDetached as exc:
                if ctx.reattaches >= self.config.max_reattach_per_run:
                    raise SessionLost(
                        f"Session to {env.target_id} detached again ({exc.reason}); giving up",
                        {"target": env.target_id},
                    ) from exc
                logger.warning("session to %s detached mid-step (%s); waiting for reattach", env.target_id, exc.reason)
                ctx.session_handle = await self.sessions.recover(handle, ctx)
                ctx.reattaches += 1

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _step_failed(
        step: Step,
        path: tuple[int, ...],
        reason: str,
        cause: str,
        details: dict[str, Any] | None = None,
    ) -> StepFailed:
        return StepFailed(
            reason,
            dict(details or {}),
            step_index=path[0],
            kind=step.kind.value,
            path=path,
            cause=cause,
        )

    def _emit(self, sink: ProgressSink | None, event: dict[str, Any]) -> None:
        if sink is None:
            return
        try:
            result = sink(event)
        except Exception:  # noqa: BLE001
            logger.debug("progress sink failed", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._sink_tasks.add(task)
            task.add_done_callback(self._sink_done)

    def _sink_done(self, task: asyncio.Task) -> None:
        self._sink_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("progress sink failed: %s", task.exception())


def _fmt_path(path: tuple[int, ...]) -> str:
    return ".".join(str(p) for p in path)


__all__ = ["ExecutionContext", "ProgressSink", "StepInterpreter"]
