from .config import load_pipeline, load_pipeline_from_string, write_example_config
from .container import ContainerHandle, ContainerRuntime, DockerRuntime, LogStream, Mount
from .dag import Batch, plan, step_order, validate
from .model import CacheConfig, Pipeline, PipelineOutcome, Secret, Stage, Step, StepResult
from .runner import RunOptions, run, run_pipeline

__all__ = [
    "load_pipeline", "load_pipeline_from_string", "write_example_config",
    "ContainerHandle", "ContainerRuntime", "DockerRuntime", "LogStream", "Mount",
    "Batch", "plan", "step_order", "validate",
    "CacheConfig", "Pipeline", "PipelineOutcome", "Secret", "Stage", "Step", "StepResult",
    "RunOptions", "run", "run_pipeline",
]
