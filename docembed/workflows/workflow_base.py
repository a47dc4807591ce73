#!/usr/bin/env python3
"""
Base Workflow Class

Defines the contract for workflow implementations. Workflows orchestrate
documents through dispatch, extraction, chunking, embedding and assembly,
and report what happened as a result object.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class WorkflowConfig:
    """Configuration for workflows."""
    name: str
    show_progress: bool = True
    save_manifest: bool = True


@dataclass
class WorkflowResult:
    """Counts and timing of one workflow execution."""
    workflow_name: str
    success: bool
    items_processed: int
    items_failed: int
    start_time: datetime
    end_time: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success_rate(self) -> float:
        """Percentage of items that succeeded; 0.0 when nothing ran."""
        attempted = self.items_processed + self.items_failed
        return 100.0 * self.items_processed / attempted if attempted else 0.0


@dataclass
class RunManifest(WorkflowResult):
    """
    Outcome of one embedding run.

    ``succeeded`` lists documents whose every segment produced a record;
    ``failed`` maps every other document to its failure reasons.
    """
    run_id: str = ""
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, List[str]] = field(default_factory=dict)
    records_emitted: int = 0
    segments_failed: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_name": self.workflow_name,
            "success": self.success,
            "cancelled": self.cancelled,
            "succeeded": list(self.succeeded),
            "failed": {doc_id: list(reasons) for doc_id, reasons in self.failed.items()},
            "records_emitted": self.records_emitted,
            "segments_failed": self.segments_failed,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "errors": list(self.errors),
            "metadata": self.metadata,
        }


class WorkflowBase(ABC):
    """
    Abstract base class for all workflows.

    Subclasses validate their collaborators and run; the base class names the
    workflow and persists results.
    """

    def __init__(self, config: Optional[WorkflowConfig] = None):
        self.config = config or WorkflowConfig(name="unnamed_workflow")

    @abstractmethod
    def validate_inputs(self, **kwargs) -> bool:
        """Return True when the workflow is ready to run."""

    @abstractmethod
    def execute(self, **kwargs) -> WorkflowResult:
        """Run the workflow and describe the outcome."""

    def save_results(self, manifest: RunManifest, output_dir: Union[str, Path]) -> Optional[Path]:
        """
        Write ``manifest`` as ``<name>_<run_id>.json`` under ``output_dir``.

        Returns:
            The file written, or None when saving is disabled or fails
        """
        if not self.config.save_manifest:
            return None

        path = Path(output_dir) / f"{self.name}_{manifest.run_id}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump(manifest.to_dict(), f, indent=2, default=str)
        except OSError as e:
            logger.warning(f"Failed to save run manifest: {e}")
            return None
        logger.debug(f"Run manifest saved to {path}")
        return path

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def supports_streaming(self) -> bool:
        """Whether this workflow consumes documents lazily."""
        return False

    def get_workflow_info(self) -> Dict[str, Any]:
        return {
            "name": self.config.name,
            "class": self.__class__.__name__,
            "supports_streaming": self.supports_streaming,
        }
