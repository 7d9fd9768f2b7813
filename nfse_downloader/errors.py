"""
Taxonomia de erros do NFSe Downloader.

Responsável por:
1. Definir os tipos de erro (ErrorType) e suas exceções
2. Classificar exceções arbitrárias (analyze_error)
3. Indicar se um erro deve causar retry
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class ErrorType(str, Enum):
    """Tipos de erro conhecidos."""
    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTHENTICATION = "authentication"  # Fatal - não tentar novamente
    ELEMENT_NOT_FOUND = "element_not_found"
    DOWNLOAD_FAILURE = "download_failure"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# EXCEÇÕES
# =============================================================================

class NFSeError(Exception):
    """Erro base do downloader."""

    error_type: ErrorType = ErrorType.UNKNOWN
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class AuthenticationError(NFSeError):
    """Falha no login. Aborta a execução inteira."""
    error_type = ErrorType.AUTHENTICATION


class NavigationTimeoutError(NFSeError):
    error_type = ErrorType.TIMEOUT
    retryable = True


class NetworkError(NFSeError):
    error_type = ErrorType.NETWORK
    retryable = True


class ElementNotFoundError(NFSeError):
    """Nenhuma estratégia de seletor encontrou o elemento."""
    error_type = ErrorType.ELEMENT_NOT_FOUND
    retryable = True


class DownloadFailureError(NFSeError):
    """O arquivo não apareceu na pasta de staging dentro do timeout."""
    error_type = ErrorType.DOWNLOAD_FAILURE
    retryable = True


class CapacityExceededError(NFSeError):
    """Limite de execuções concorrentes atingido."""
    error_type = ErrorType.CAPACITY_EXCEEDED


class ShuttingDownError(CapacityExceededError):
    """O gerenciador está encerrando e não aceita novas execuções."""


class InvalidParametersError(NFSeError):
    """Parâmetros de execução inválidos."""
    error_type = ErrorType.VALIDATION

    def __init__(self, message: str, errors: Optional[list] = None, **context: Any):
        super().__init__(message, **context)
        self.errors = errors or []


# =============================================================================
# CLASSIFICAÇÃO
# =============================================================================

_SEVERITY = {
    ErrorType.TIMEOUT: Severity.MEDIUM,
    ErrorType.NETWORK: Severity.HIGH,
    ErrorType.AUTHENTICATION: Severity.HIGH,
    ErrorType.ELEMENT_NOT_FOUND: Severity.MEDIUM,
    ErrorType.DOWNLOAD_FAILURE: Severity.MEDIUM,
    ErrorType.CAPACITY_EXCEEDED: Severity.LOW,
    ErrorType.VALIDATION: Severity.MEDIUM,
    ErrorType.UNKNOWN: Severity.MEDIUM,
}

_RETRYABLE_TYPES = {
    ErrorType.TIMEOUT,
    ErrorType.NETWORK,
    ErrorType.ELEMENT_NOT_FOUND,
    ErrorType.DOWNLOAD_FAILURE,
}

# Ordem importa: a primeira palavra-chave encontrada define o tipo
_KEYWORDS = (
    (ErrorType.TIMEOUT, ("timeout", "navigation")),
    (ErrorType.NETWORK, ("net::", "network", "connection")),
    (ErrorType.AUTHENTICATION, ("login", "authentication", "autentica", "senha")),
    (ErrorType.ELEMENT_NOT_FOUND, ("element", "selector", "seletor", "elemento")),
    (ErrorType.DOWNLOAD_FAILURE, ("download",)),
)


@dataclass
class ErrorInfo:
    """Resultado da análise de um erro."""
    type: ErrorType
    severity: Severity
    retryable: bool
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
        }


def classify_error(exc: BaseException) -> ErrorType:
    """Determina o ErrorType de uma exceção qualquer."""
    if isinstance(exc, NFSeError):
        return exc.error_type
    if isinstance(exc, (PlaywrightTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorType.NETWORK

    message = str(exc).lower()
    for error_type, keywords in _KEYWORDS:
        if any(kw in message for kw in keywords):
            return error_type

    if isinstance(exc, PlaywrightError):
        # Erros genéricos do driver costumam ser desincronização da UI
        return ErrorType.ELEMENT_NOT_FOUND
    return ErrorType.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, NFSeError):
        return exc.retryable
    return classify_error(exc) in _RETRYABLE_TYPES


def analyze_error(exc: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorInfo:
    """
    Analisa uma exceção para determinar tipo, severidade e se permite retry.

    Args:
        exc: Exceção capturada
        context: Dados para reconstruir a falha (job, período, página, linha)

    Returns:
        ErrorInfo com a classificação
    """
    error_type = classify_error(exc)
    merged = dict(getattr(exc, "context", {}) or {})
    if context:
        merged.update(context)
    return ErrorInfo(
        type=error_type,
        severity=_SEVERITY[error_type],
        retryable=is_retryable(exc),
        message=str(exc),
        context=merged,
    )
