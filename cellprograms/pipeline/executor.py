"""In-memory stage execution with dependency ordering."""

from collections import deque
from typing import Any, Callable, Dict, List, Optional
import time

from .logger import PipelineLogger


class InMemoryExecutor:
    """Run registered stage functions in dependency order.

    Each stage is called with the keyword arguments given to ``run`` plus
    ``stage_results``, the results of the stages completed so far. A stage
    is skipped (result ``None``) when its ``enabled`` flag is False or when
    any stage it depends on was skipped.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("normalize", normalize_stage)
    >>> executor.register_stage("pca", pca_stage, depends_on=["normalize"])
    >>> results = executor.run(store=store)
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.skipped_stages: List[str] = []
        self.durations: Dict[str, float] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        enabled: bool = True,
    ) -> None:
        """Register a stage function.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        func : Callable
            Stage function to execute
        depends_on : List[str], optional
            Stage ids this stage depends on
        name : str, optional
            Human-readable stage name
        enabled : bool
            Whether the stage runs
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' already registered")
        self.stages[stage_id] = {
            "func": func,
            "depends_on": list(depends_on or []),
            "name": name or stage_id,
            "enabled": enabled,
        }

    def _get_execution_order(self) -> List[str]:
        """Topological order; registration order breaks ties."""
        for stage_id, stage in self.stages.items():
            missing = [d for d in stage["depends_on"] if d not in self.stages]
            if missing:
                raise ValueError(f"Stage '{stage_id}' depends on unknown stages: {missing}")

        in_degree = {sid: len(stage["depends_on"]) for sid, stage in self.stages.items()}
        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []
        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other in self.stages.items():
                if stage_id in other["depends_on"]:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")
        return order

    def run(self, **kwargs) -> Dict[str, Any]:
        """Execute all registered stages in order.

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result (None for skipped stages)
        """
        order = self._get_execution_order()
        results: Dict[str, Any] = {}

        for stage_id in order:
            stage = self.stages[stage_id]
            blocked = [d for d in stage["depends_on"] if d in self.skipped_stages]
            if not stage["enabled"] or blocked:
                results[stage_id] = None
                self.skipped_stages.append(stage_id)
                if self.logger:
                    reason = "disabled" if not stage["enabled"] else f"upstream skipped: {blocked}"
                    self.logger.log_stage_skipped(stage_id, reason)
                continue

            if self.logger:
                self.logger.log_stage_start(stage_id, stage["name"])
            start_time = time.time()
            try:
                results[stage_id] = stage["func"](**kwargs, stage_results=results)
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(e))
                raise
            duration = time.time() - start_time
            self.durations[stage_id] = duration
            self.completed_stages.append(stage_id)
            if self.logger:
                self.logger.log_stage_complete(stage_id, duration)

        return results
