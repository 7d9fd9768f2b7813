"""
Gerenciador de Execuções.

Responsável por:
1. Aceitar execuções respeitando o limite de concorrência
2. Rodar cada execução como uma asyncio.Task em segundo plano
3. Manter status, progresso e log (anel de 50 entradas) de cada execução
4. Cancelamento cooperativo e encerramento com tempo de tolerância

Execuções ficam em memória durante a vida do processo.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from .config import Config
from .errors import CapacityExceededError, ShuttingDownError, analyze_error
from .ingest import build_ingestion_sink
from .orchestrator import PipelineOrchestrator, ProgressSnapshot
from .validators import validate_params

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.STARTING, JobStatus.RUNNING)


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class Job:
    """Uma execução e seu estado observável."""
    id: int
    params: Dict[str, Any]
    status: JobStatus = JobStatus.STARTING
    started_at: str = field(default_factory=_now)
    ended_at: Optional[str] = None
    duration: Optional[float] = None
    progress: ProgressSnapshot = field(default_factory=ProgressSnapshot)
    result: Optional[dict] = None
    error: Optional[str] = None
    logs: Deque[Dict[str, str]] = field(default_factory=lambda: deque(maxlen=50))
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    _clock_start: float = field(default_factory=time.monotonic, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def holds_slot(self) -> bool:
        """Ocupa uma vaga enquanto a tarefa (e o navegador) estiver viva, mesmo cancelada."""
        if self.task is not None:
            return not self.task.done()
        return self.is_active

    def log(self, message: str) -> None:
        self.logs.append({"timestamp": _now(), "message": message})

    def finish(self, status: JobStatus) -> None:
        self.status = status
        self.ended_at = _now()
        self.duration = round(time.monotonic() - self._clock_start, 2)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "params": self.params,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "duration": self.duration,
            "progress": self.progress.to_dict(),
            "error": self.error,
        }

    def to_dict(self) -> dict:
        data = self.summary()
        data["result"] = self.result
        data["logs"] = list(self.logs)
        return data


OrchestratorFactory = Callable[..., Any]


class ExecutionManager:
    """
    Registro de execuções em memória.

    Args:
        cfg: Configuração base; cada execução recebe uma cópia com seus parâmetros
        orchestrator_factory: Cria o orquestrador de uma execução
            (cfg, job_id, progress_callback, should_continue)
    """

    def __init__(self, cfg: Optional[Config] = None,
                 orchestrator_factory: Optional[OrchestratorFactory] = None):
        self.config = cfg or Config()
        self.orchestrator_factory = orchestrator_factory or self._default_orchestrator
        self.jobs: Dict[int, Job] = {}
        self._ids = itertools.count(1)
        self._shutting_down = False

    @property
    def running_count(self) -> int:
        return sum(1 for job in self.jobs.values() if job.holds_slot)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # =========================================================================
    # OPERAÇÕES
    # =========================================================================

    async def start_execution(self, params: Any) -> int:
        """
        Valida os parâmetros e agenda a execução.

        Returns:
            id da execução (retorna antes da execução terminar)

        Raises:
            ShuttingDownError: o gerenciador está encerrando
            InvalidParametersError: parâmetros inválidos
            CapacityExceededError: limite de execuções simultâneas atingido
        """
        if self._shutting_down:
            raise ShuttingDownError("Gerenciador em encerramento, execução recusada")

        validated = validate_params(params)

        limit = self.config.MAX_CONCURRENT_EXECUTIONS
        if self.running_count >= limit:
            logger.warning(f"[EXEC] Capacidade esgotada ({self.running_count}/{limit})")
            raise CapacityExceededError(
                f"Limite de {limit} execuções simultâneas atingido", running=self.running_count
            )

        job = Job(
            id=next(self._ids),
            params=validated.sanitized(),
            logs=deque(maxlen=self.config.JOB_LOG_SIZE),
        )
        self.jobs[job.id] = job
        job.log(f"Execução criada para {job.params.get('cnpj')}")
        logger.info(f"[EXEC] Execução {job.id} criada: {job.params}")

        cfg = self.config.with_overrides(**validated.config_overrides())
        job.task = asyncio.create_task(self._run(job, cfg))
        return job.id

    def get_execution(self, job_id: int) -> Optional[Job]:
        return self.jobs.get(job_id)

    def list_executions(
        self,
        status: Optional[Union[str, JobStatus]] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[dict], int]:
        """Resumos ordenados por id, com filtro opcional de status."""
        jobs = sorted(self.jobs.values(), key=lambda j: j.id)
        if status is not None:
            wanted = JobStatus(status)
            jobs = [j for j in jobs if j.status == wanted]
        total = len(jobs)
        page = jobs[max(offset, 0):max(offset, 0) + max(limit, 0)]
        return [j.summary() for j in page], total

    def cancel_execution(self, job_id: int) -> bool:
        """
        Marca a execução como cancelada.

        O orquestrador para no próximo checkpoint (período ou página).

        Returns:
            False se a execução não existe ou já terminou
        """
        job = self.jobs.get(job_id)
        if job is None or not job.is_active:
            return False

        job.finish(JobStatus.CANCELLED)
        job.log("Execução cancelada pelo usuário")
        logger.info(f"[EXEC] Execução {job_id} cancelada")
        return True

    def get_stats(self) -> dict:
        jobs = list(self.jobs.values())
        durations = [j.duration for j in jobs if j.duration is not None]
        downloaded = sum(
            (j.result or {}).get("xmlsDownloaded", j.progress.xmls_downloaded) for j in jobs
        )
        return {
            "total": len(jobs),
            "running": sum(1 for j in jobs if j.is_active),
            "completed": sum(1 for j in jobs if j.status == JobStatus.COMPLETED),
            "failed": sum(1 for j in jobs if j.status in (JobStatus.FAILED, JobStatus.ERROR)),
            "cancelled": sum(1 for j in jobs if j.status == JobStatus.CANCELLED),
            "max_concurrent": self.config.MAX_CONCURRENT_EXECUTIONS,
            "total_xmls_downloaded": downloaded,
            "average_duration": round(sum(durations) / len(durations), 2) if durations else 0,
        }

    async def shutdown(self) -> None:
        """Recusa novas execuções e aguarda as ativas até o tempo de tolerância."""
        self._shutting_down = True
        pending = [j.task for j in self.jobs.values() if j.task and not j.task.done()]
        if not pending:
            logger.info("[EXEC] Encerramento sem execuções ativas")
            return

        grace = self.config.SHUTDOWN_GRACE_SECONDS
        logger.info(f"[EXEC] Aguardando {len(pending)} execução(ões) por até {grace}s")
        _, still_running = await asyncio.wait(pending, timeout=grace)
        if still_running:
            logger.warning(
                f"[EXEC] {len(still_running)} execução(ões) ainda ativas após {grace}s"
            )

    # =========================================================================
    # EXECUÇÃO EM SEGUNDO PLANO
    # =========================================================================

    def _default_orchestrator(self, cfg: Config, job_id: int,
                              progress_callback, should_continue) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            cfg,
            job_id=job_id,
            progress_callback=progress_callback,
            should_continue=should_continue,
            ingestion_sink=build_ingestion_sink(cfg),
        )

    async def _run(self, job: Job, cfg: Config) -> None:
        if job.status == JobStatus.STARTING:
            job.status = JobStatus.RUNNING
            job.log("Execução em andamento")

        try:
            orchestrator = self.orchestrator_factory(
                cfg,
                job.id,
                progress_callback=lambda snapshot: self._on_progress(job, snapshot),
                should_continue=lambda: job.status != JobStatus.CANCELLED,
            )
            report = await orchestrator.execute()

        except asyncio.CancelledError:
            if job.is_active:
                job.finish(JobStatus.CANCELLED)
            job.log("Tarefa interrompida")
            raise

        except Exception as e:
            info = analyze_error(e, {"job_id": job.id})
            job.error = str(e)
            logger.error(f"[EXEC] Execução {job.id} falhou ({info.type.value}): {e}")
            if job.status != JobStatus.CANCELLED:
                job.finish(JobStatus.ERROR)
            job.log(f"Erro: {e}")
            return

        job.result = report.to_dict()
        if job.status == JobStatus.CANCELLED:
            job.log("Execução interrompida após cancelamento")
            return

        if not report.success:
            job.error = report.last_error
        job.finish(JobStatus.COMPLETED if report.success else JobStatus.FAILED)
        job.log(
            f"Execução finalizada ({job.status.value}): "
            f"{report.xmls_downloaded} XMLs baixados, {report.failures} falhas"
        )
        logger.info(f"[EXEC] Execução {job.id} finalizada: {job.status.value}")

    def _on_progress(self, job: Job, snapshot: ProgressSnapshot) -> None:
        job.progress = snapshot
        job.log(
            f"Página {snapshot.current_page} de {snapshot.current_period}: "
            f"{snapshot.xmls_downloaded} XMLs baixados até agora"
        )
