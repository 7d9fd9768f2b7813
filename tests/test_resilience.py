"""
Teste do módulo de resiliência
==============================
Verifica que:
1. Delays linear e exponencial
2. Retry de corrotinas para erros transitórios
3. Erros fatais propagam sem retry
"""
import pytest

from nfse_downloader.errors import AuthenticationError, ElementNotFoundError
from nfse_downloader.resilience import (
    exponential_delay,
    linear_delay,
    retry_with_backoff_async,
)


class TestDelays:
    def test_linear(self):
        """QG: Delay linear é base * (tentativa + 1)."""
        assert [linear_delay(i, 2.0) for i in range(3)] == [2.0, 4.0, 6.0]

    def test_exponencial_sem_jitter(self):
        """QG: Exponencial respeita o teto."""
        assert exponential_delay(0, 1.0, jitter=False) == 1.0
        assert exponential_delay(3, 1.0, jitter=False) == 8.0
        assert exponential_delay(10, 1.0, max_delay=5.0, jitter=False) == 5.0

    def test_jitter_dentro_da_faixa(self):
        """QG: Jitter fica entre 75% e 125% do delay."""
        for _ in range(20):
            assert 0.75 <= exponential_delay(0, 1.0) <= 1.25


class TestRetryWithBackoffAsync:
    """Testes do decorator de retry."""

    @pytest.mark.asyncio
    async def test_sucesso_apos_falhas_transitorias(self):
        """QG: TimeoutError é retentado até o sucesso."""
        calls = []
        retries = []

        @retry_with_backoff_async(max_retries=3, base_delay=0, jitter=False,
                                  on_retry=lambda e, n, d: retries.append(n))
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TimeoutError("lento")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_erro_retryable_da_taxonomia(self):
        """QG: Exceções marcadas como retryable também são retentadas."""
        calls = []

        @retry_with_backoff_async(max_retries=1, base_delay=0, jitter=False)
        async def missing():
            calls.append(1)
            raise ElementNotFoundError("sumiu")

        with pytest.raises(ElementNotFoundError):
            await missing()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_erro_fatal_sem_retry(self):
        """QG: AuthenticationError propaga na primeira tentativa."""
        calls = []

        @retry_with_backoff_async(max_retries=3, base_delay=0)
        async def login():
            calls.append(1)
            raise AuthenticationError("recusado")

        with pytest.raises(AuthenticationError):
            await login()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_on_retry_assincrono(self):
        """QG: on_retry pode ser corrotina."""
        seen = []

        async def record(exc, attempt, delay):
            seen.append(attempt)

        @retry_with_backoff_async(max_retries=1, base_delay=0, jitter=False, on_retry=record)
        async def once():
            if not seen:
                raise ConnectionError("caiu")
            return True

        assert await once()
        assert seen == [1]
