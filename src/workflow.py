"""
Dependency-ordered task execution.

A TaskGraph holds named callables and the names they depend on. run()
executes every task whose dependencies have succeeded, up to max_parallel at
a time, and marks the dependents of a failed task as skipped.
"""

import logging
import threading
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class DependencyFailed(Exception):
    """A task was not run because something it depends on failed."""

    def __init__(self, task: str, dependency: str):
        self.task = task
        self.dependency = dependency
        super().__init__(f"{task} skipped: dependency {dependency} failed")


class Cancelled(Exception):
    """A task was not started because the run was cancelled."""


@dataclass
class TaskOutcome:
    """What happened to one task."""

    name: str
    value: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class TaskGraph:
    """A directed acyclic graph of named tasks."""

    def __init__(self):
        self._tasks: Dict[str, Callable[[], Any]] = {}
        self._deps: Dict[str, Tuple[str, ...]] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def add(self, name: str, fn: Callable[[], Any], depends_on=()) -> None:
        if name in self._tasks:
            raise ValueError(f"Task {name} already added")
        self._tasks[name] = fn
        self._deps[name] = tuple(depends_on)

    def _build(self) -> Tuple[Dict[str, int], Dict[str, Set[str]]]:
        indegree: Dict[str, int] = {}
        dependents: Dict[str, Set[str]] = defaultdict(set)
        for name, deps in self._deps.items():
            for dep in deps:
                if dep not in self._tasks:
                    raise ValueError(f"Task {name} depends on unknown task {dep}")
                dependents[dep].add(name)
            indegree[name] = len(set(deps))
        return indegree, dependents

    def run(
        self,
        max_parallel: int = 4,
        failed: Optional[Callable[[Any], bool]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, TaskOutcome]:
        """
        Execute the graph.

        Args:
            max_parallel: Maximum tasks in flight
            failed: Predicate marking a returned value as a failure, for
                tasks that report errors instead of raising them
            cancel: When set, no further tasks are started

        Returns:
            Outcome per task, in the order tasks were added
        """
        indegree, dependents = self._build()
        order = {name: idx for idx, name in enumerate(self._tasks)}
        outcomes: Dict[str, TaskOutcome] = {}
        ready: List[str] = [name for name in self._tasks if indegree[name] == 0]
        running: Dict[Future, str] = {}

        def skip_dependents(name: str) -> None:
            pending = [name]
            while pending:
                current = pending.pop()
                for child in sorted(dependents.get(current, ()), key=order.get):
                    if child in outcomes:
                        continue
                    outcomes[child] = TaskOutcome(
                        name=child, error=DependencyFailed(child, name), skipped=True
                    )
                    logger.warning(f"Skipping {child}: dependency {name} failed")
                    pending.append(child)

        with ThreadPoolExecutor(max_workers=max(1, max_parallel)) as executor:
            while ready or running:
                while ready and len(running) < max(1, max_parallel):
                    name = ready.pop(0)
                    if cancel is not None and cancel.is_set():
                        outcomes[name] = TaskOutcome(
                            name=name,
                            error=Cancelled(f"{name} not started: run cancelled"),
                            skipped=True,
                        )
                        skip_dependents(name)
                        continue
                    logger.debug(f"Starting task {name}")
                    running[executor.submit(self._tasks[name])] = name

                if not running:
                    continue

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: order[running[f]]):
                    name = running.pop(future)
                    try:
                        value = future.result()
                    except Exception as e:
                        logger.debug(f"Task {name} raised: {e}")
                        outcomes[name] = TaskOutcome(name=name, error=e)
                        skip_dependents(name)
                        continue

                    outcome = TaskOutcome(name=name, value=value)
                    outcomes[name] = outcome
                    if failed is not None and failed(value):
                        outcome.error = RuntimeError(f"{name} reported failure")
                        skip_dependents(name)
                        continue

                    for child in sorted(dependents.get(name, ()), key=order.get):
                        indegree[child] -= 1
                        if indegree[child] == 0 and child not in outcomes:
                            ready.append(child)

        unreached = [name for name in self._tasks if name not in outcomes]
        if unreached:
            raise ValueError(f"Dependency cycle between: {', '.join(unreached)}")

        return {name: outcomes[name] for name in self._tasks}
