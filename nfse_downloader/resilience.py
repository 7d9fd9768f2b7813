"""
=============================================================================
RESILIENCE MODULE - NFSe Downloader
=============================================================================
Retry com backoff para operações no portal.

Componentes:
- exponential_delay / linear_delay: cálculo do tempo de espera entre tentativas
- retry_with_backoff_async: decorator para retry de corrotinas

Uso:
    from nfse_downloader.resilience import retry_with_backoff_async

    @retry_with_backoff_async(max_retries=2, base_delay=1.0)
    async def abrir_pagina():
        ...
=============================================================================
"""

import asyncio
import functools
import inspect
import logging
import random
from typing import Any, Callable, Optional, Tuple, Type

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import is_retryable

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURAÇÃO DE ERROS RETRIABLE
# =============================================================================

# Erros que devem causar retry independente da mensagem
RETRIABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    PlaywrightTimeoutError,
)


# =============================================================================
# CÁLCULO DE DELAY
# =============================================================================

def exponential_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Delay com backoff exponencial e jitter de ±25%.

    Args:
        attempt: Índice da tentativa que falhou (0 = primeira)
        base_delay: Delay base em segundos
        max_delay: Delay máximo em segundos
        exponential_base: Base do exponencial
        jitter: Se True, adiciona variação aleatória
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        delay = delay * (0.75 + random.random() * 0.5)
    return delay


def linear_delay(attempt: int, base_delay: float) -> float:
    """Delay que cresce linearmente: base * (attempt + 1)."""
    return base_delay * (attempt + 1)


# =============================================================================
# RETRY COM BACKOFF
# =============================================================================

def retry_with_backoff_async(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retriable_exceptions: Tuple[Type[BaseException], ...] = RETRIABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[BaseException, int, float], Any]] = None,
) -> Callable:
    """
    Decorator de retry para corrotinas.

    Além das exceções em retriable_exceptions, qualquer erro classificado
    como retryable pela taxonomia (errors.is_retryable) também causa retry.
    Erros fatais, como AuthenticationError, são propagados imediatamente.

    Args:
        max_retries: Número máximo de retries (total = max_retries + 1)
        base_delay: Delay base em segundos
        max_delay: Delay máximo em segundos
        exponential_base: Base do exponencial
        jitter: Se True, adiciona variação aleatória
        retriable_exceptions: Exceções que sempre causam retry
        on_retry: Callback (exception, attempt, delay); pode ser corrotina

    Exemplo:
        @retry_with_backoff_async(max_retries=2, base_delay=2.0)
        async def navegar(page, url):
            await page.goto(url)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except Exception as e:
                    if not (isinstance(e, retriable_exceptions) or is_retryable(e)):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"[RETRY] {func.__name__} falhou após {max_retries + 1} tentativas: {e}"
                        )
                        raise

                    delay = exponential_delay(
                        attempt, base_delay, max_delay, exponential_base, jitter
                    )

                    logger.warning(
                        f"[RETRY] {func.__name__} tentativa {attempt + 1}/{max_retries + 1} "
                        f"falhou: {e}. Retry em {delay:.2f}s"
                    )

                    if on_retry:
                        result = on_retry(e, attempt + 1, delay)
                        if inspect.isawaitable(result):
                            await result

                    await asyncio.sleep(delay)

        return wrapper
    return decorator
