"""Pipeline orchestration.

Example Usage
-------------
>>> from cellprograms.pipeline import AnalysisPipeline, PipelineLogger
>>> logger = PipelineLogger("out/logs")
>>> logger.setup()
>>> result = AnalysisPipeline(config, pipeline_logger=logger).run(store)
"""

from .executor import InMemoryExecutor
from .logger import ColoredFormatter, PipelineLogger
from .runner import AnalysisPipeline, PipelineResult

__all__ = [
    "AnalysisPipeline",
    "ColoredFormatter",
    "InMemoryExecutor",
    "PipelineLogger",
    "PipelineResult",
]
