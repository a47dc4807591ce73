"""
Workflows Module

Orchestration of a document stream through dispatch, extraction,
chunking, batched inference and record assembly.
"""

from .assembler import ConsumerSink, DocumentOutcome, InMemorySink, JsonlSink, RecordAssembler
from .scheduler import BatchScheduler, SchedulerConfig
from .workflow_base import RunManifest, WorkflowBase, WorkflowConfig, WorkflowResult
from .workflow_embedding import EmbeddingWorkflow

__all__ = [
    'BatchScheduler',
    'ConsumerSink',
    'DocumentOutcome',
    'EmbeddingWorkflow',
    'InMemorySink',
    'JsonlSink',
    'RecordAssembler',
    'RunManifest',
    'SchedulerConfig',
    'WorkflowBase',
    'WorkflowConfig',
    'WorkflowResult',
]
