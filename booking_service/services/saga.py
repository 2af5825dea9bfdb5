"""
Ordered steps with compensations.

Each step's action receives the shared context dict and its return value is
stored under the step name. When a step raises, compensations of the steps
that already completed run in reverse order. A compensation that raises is
logged and recorded on the result; the remaining compensations still run.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[Dict[str, Any]], Any]
    compensation: Optional[Callable[[Dict[str, Any], Exception], None]] = None


@dataclass
class SagaResult:
    success: bool
    context: Dict[str, Any]
    failed_step: Optional[str] = None
    error: Optional[Exception] = None
    compensated: List[str] = field(default_factory=list)
    compensation_errors: Dict[str, Exception] = field(default_factory=dict)


class Saga:

    def __init__(self, name: str, steps: List[SagaStep]):
        self.name = name
        self.steps = steps

    def execute(self, context: Optional[Dict[str, Any]] = None) -> SagaResult:
        context = context if context is not None else {}
        completed: List[SagaStep] = []

        for step in self.steps:
            try:
                context[step.name] = step.action(context)
            except Exception as e:
                logger.warning(f"Saga '{self.name}' failed at step '{step.name}': {e}")
                result = SagaResult(success=False, context=context, failed_step=step.name, error=e)
                self._compensate(completed, context, e, result)
                return result
            completed.append(step)

        return SagaResult(success=True, context=context)

    def _compensate(self, completed: List[SagaStep], context: Dict[str, Any], error: Exception, result: SagaResult):
        for step in reversed(completed):
            if step.compensation is None:
                continue
            try:
                step.compensation(context, error)
            except Exception as e:
                logger.error(f"Saga '{self.name}' compensation for '{step.name}' failed: {e}")
                result.compensation_errors[step.name] = e
                continue
            result.compensated.append(step.name)
