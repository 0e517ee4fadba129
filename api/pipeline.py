"""
Sequential provisioning pipeline.

Steps run in order and each one sees the results of the steps before it.
There is no transaction: when a step fails, the resources created by earlier
steps stay in place unless the pipeline was built with a compensating
``on_failure`` hook such as ``rollback_completed``. The failing error is
always re-raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from errors import ConsoleError, UpstreamError

logger = logging.getLogger("osconsole.pipeline")


@dataclass
class PipelineStep:
    name: str
    run: Callable[[Dict[str, Any]], Dict[str, Any]]
    undo: Optional[Callable[[Dict[str, Any]], None]] = None


@dataclass
class CompletedStep:
    step: PipelineStep
    resource: Dict[str, Any]

    @property
    def resource_id(self) -> str:
        return self.resource.get("id", "")


FailureHook = Callable[[List[CompletedStep], ConsoleError], None]


def log_failure(completed: List[CompletedStep], error: ConsoleError) -> None:
    """Default hook: report what was left behind, change nothing."""
    if completed:
        left = ", ".join(f"{c.step.name}={c.resource_id}" for c in completed)
        logger.warning("Pipeline failed (%s); created resources left in place: %s", error.message, left)
    else:
        logger.warning("Pipeline failed before creating anything: %s", error.message)


def rollback_completed(completed: List[CompletedStep], error: ConsoleError) -> None:
    """Undo completed steps in reverse order."""
    for done in reversed(completed):
        if done.step.undo is None:
            continue
        try:
            done.step.undo(done.resource)
            logger.info("Rolled back %s %s", done.step.name, done.resource_id)
        except ConsoleError as e:
            logger.error("Rollback of %s %s failed: %s", done.step.name, done.resource_id, e.message)


@dataclass
class ProvisioningPipeline:
    steps: List[PipelineStep]
    on_failure: FailureHook = log_failure
    completed: List[CompletedStep] = field(default_factory=list)

    def run(self) -> Dict[str, Any]:
        """
        Execute every step. Returns a context holding each step's resource
        under its name and the collected ids under ``ids``.
        """
        ctx: Dict[str, Any] = {"ids": {}}
        self.completed = []
        for step in self.steps:
            try:
                resource = step.run(ctx) or {}
                if not resource.get("id"):
                    raise UpstreamError(502, None, f"Failed to get {step.name} id")
            except ConsoleError as e:
                self.on_failure(list(self.completed), e)
                raise
            ctx[step.name] = resource
            ctx["ids"][f"{step.name}_id"] = resource["id"]
            self.completed.append(CompletedStep(step, resource))
        return ctx
