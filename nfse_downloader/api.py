"""
API HTTP do NFSe Downloader
===========================
Expõe o gerenciador de execuções via FastAPI.

Para rodar localmente:
    uvicorn nfse_downloader.api:app --port 8000

Endpoints:
    POST /executions              - Inicia uma execução (202)
    GET  /executions              - Lista execuções (status, offset, limit)
    GET  /executions/stats        - Estatísticas agregadas
    GET  /executions/{id}         - Detalhe de uma execução
    POST /executions/{id}/cancel  - Cancela uma execução ativa
    GET  /health                  - Health check
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, status
from pydantic import BaseModel

from . import __version__
from .config import Config
from .errors import CapacityExceededError, InvalidParametersError, ShuttingDownError
from .execution_manager import ExecutionManager, JobStatus

logger = logging.getLogger(__name__)


# ============================================================================
# Models
# ============================================================================


class HealthResponse(BaseModel):
    """Resposta do health check."""

    status: str
    running: int
    version: str = __version__


class StartResponse(BaseModel):
    execution_id: int


class ExecutionList(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    offset: int
    limit: int


class CancelResponse(BaseModel):
    execution_id: int
    cancelled: bool


# ============================================================================
# App
# ============================================================================


def create_app(manager: Optional[ExecutionManager] = None) -> FastAPI:
    """Cria a aplicação com o gerenciador informado (ou um novo)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Iniciando API do NFSe Downloader...")
        yield
        logger.info("Encerrando API, aguardando execuções ativas...")
        await app.state.manager.shutdown()

    app = FastAPI(
        title="NFSe Downloader",
        description="Download, deduplicação e organização de XMLs de NFSe",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.manager = manager or ExecutionManager(Config())

    def _manager(request: Request) -> ExecutionManager:
        return request.app.state.manager

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check: 'shutting_down' quando o encerramento começou."""
        manager = _manager(request)
        return HealthResponse(
            status="shutting_down" if manager.shutting_down else "healthy",
            running=manager.running_count,
        )

    @app.post(
        "/executions",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=StartResponse,
        responses={
            422: {"description": "Parâmetros inválidos"},
            429: {"description": "Limite de execuções simultâneas"},
            503: {"description": "Servidor em encerramento"},
        },
    )
    async def start_execution(request: Request, params: Dict[str, Any] = Body(...)):
        """Inicia uma execução e retorna o id imediatamente."""
        try:
            execution_id = await _manager(request).start_execution(params)
        except ShuttingDownError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        except CapacityExceededError as e:
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
        except InvalidParametersError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": e.message, "errors": e.errors},
            )
        return StartResponse(execution_id=execution_id)

    @app.get("/executions", response_model=ExecutionList)
    async def list_executions(
        request: Request,
        status_filter: Optional[JobStatus] = Query(None, alias="status"),
        offset: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=500),
    ):
        items, total = _manager(request).list_executions(status_filter, offset, limit)
        return ExecutionList(items=items, total=total, offset=offset, limit=limit)

    @app.get("/executions/stats")
    async def execution_stats(request: Request):
        return _manager(request).get_stats()

    @app.get("/executions/{execution_id}")
    async def get_execution(request: Request, execution_id: int):
        job = _manager(request).get_execution(execution_id)
        if job is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Execução {execution_id} não encontrada",
            )
        return job.to_dict()

    @app.post("/executions/{execution_id}/cancel", response_model=CancelResponse)
    async def cancel_execution(request: Request, execution_id: int):
        manager = _manager(request)
        if manager.get_execution(execution_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Execução {execution_id} não encontrada",
            )
        if not manager.cancel_execution(execution_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Execução {execution_id} não está ativa",
            )
        return CancelResponse(execution_id=execution_id, cancelled=True)

    return app


app = create_app()


# ============================================================================
# Rodar diretamente (desenvolvimento)
# ============================================================================

if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "nfse_downloader.api:app",
        host="0.0.0.0",
        port=int(os.getenv("XMLITZ_API_PORT", "8000")),
    )
