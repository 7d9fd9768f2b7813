"""
NFSe Downloader
===============
Download, deduplicação e organização de XMLs de NFSe do portal municipal
de Imperatriz-MA, com execuções concorrentes e API HTTP.
"""

__version__ = "1.0.0"

from nfse_downloader.config import Config
from nfse_downloader.execution_manager import ExecutionManager, Job, JobStatus
from nfse_downloader.orchestrator import PipelineOrchestrator, RunReport

__all__ = [
    "Config",
    "ExecutionManager",
    "Job",
    "JobStatus",
    "PipelineOrchestrator",
    "RunReport",
    "__version__",
]
