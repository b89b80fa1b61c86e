"""Named-step transactions on the success/failure railway.

A ``Transaction`` is an ordered tuple of ``Step`` values plus default keyword
arguments per step name.  ``call(obj)`` threads ``obj`` through each step and
stops at the first ``Failure``.  Steps mutate the object in place; when a later
step fails, earlier in-memory changes stay on the object.  Only steps with an
external side effect (the create-work ``persist`` step) touch the store, so a
failure before that step leaves nothing persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

from .result import Failure, Result, Success

logger = logging.getLogger(__name__)

StepArgs = Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class Step:
    name: str
    operation: Callable[..., Result[Any, Any]]

    def __call__(self, obj: Any, **kwargs: Any) -> Result[Any, Any]:
        result = self.operation(obj, **kwargs)
        if not isinstance(result, (Success, Failure)):
            raise TypeError(f"step {self.name!r} returned {type(result).__name__}, expected Success or Failure")
        return result


def _freeze_args(step_args: StepArgs) -> Mapping[str, Mapping[str, Any]]:
    return MappingProxyType({name: MappingProxyType(dict(args)) for name, args in step_args.items()})


class Transaction:
    """Reusable pipeline of named steps.

    Usage::

        transaction = Transaction([Step("normalize", normalize), Step("save", save)])
        result = transaction.with_step_args(normalize={"strict": True}).call(obj)
        if result.is_failure():
            handle(result.error)
    """

    def __init__(self, steps: Sequence[Step], step_args: StepArgs | None = None) -> None:
        names = [step.name for step in steps]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"step names must be unique, duplicated: {', '.join(duplicates)}")
        self._steps = tuple(steps)
        self._check_names(step_args or {})
        self._step_args = _freeze_args(step_args or {})

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(step.name for step in self._steps)

    @property
    def step_args(self) -> Mapping[str, Mapping[str, Any]]:
        return self._step_args

    def _check_names(self, step_args: StepArgs) -> None:
        unknown = sorted(set(step_args) - set(self.step_names))
        if unknown:
            raise KeyError(f"unknown step name(s): {', '.join(unknown)}; steps are {', '.join(self.step_names)}")

    def with_step_args(self, **step_args: Mapping[str, Any]) -> Transaction:
        """Return a new transaction whose defaults are overridden for the named steps.

        Overrides merge key-by-key into the existing defaults of each named
        step.  The receiver is left untouched.

        Raises:
            KeyError: If a name does not match any step.
        """
        self._check_names(step_args)
        merged = {name: dict(args) for name, args in self._step_args.items()}
        for name, args in step_args.items():
            merged.setdefault(name, {}).update(args)
        return Transaction(self._steps, merged)

    def effective_args(self, name: str, overrides: StepArgs | None = None) -> dict[str, Any]:
        args = dict(self._step_args.get(name, {}))
        if overrides and name in overrides:
            args.update(overrides[name])
        return args

    def call(self, obj: Any, step_args: StepArgs | None = None) -> Result[Any, Any]:
        """Run every step in order against *obj*.

        Args:
            obj: The object threaded through the steps.
            step_args: Per-call overrides keyed by step name, merged over the
                transaction's defaults for this call only.

        Returns:
            ``Success`` with the final value, or the first ``Failure`` unchanged.
        """
        if step_args:
            self._check_names(step_args)
        result: Result[Any, Any] = Success(obj)
        for step in self._steps:
            args = self.effective_args(step.name, step_args)
            logger.debug("Running step %s", step.name)
            result = result.and_then(lambda value, step=step, args=args: step(value, **args))
            if result.is_failure():
                logger.warning("Step %s failed: %s", step.name, result.error)
                return result
        return result

    __call__ = call

    def __repr__(self) -> str:
        return f"Transaction(steps={list(self.step_names)!r})"
