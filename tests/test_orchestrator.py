"""
Teste do orquestrador do pipeline
=================================
Verifica que:
1. Intervalo sem notas gera relatório de sucesso zerado
2. Falha em um período não interrompe os seguintes
3. Falha de autenticação aborta a execução e fecha o navegador
4. Cancelamento é observado entre páginas e entre períodos
5. Limite de páginas por período e agregação do relatório
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nfse_downloader.download import DownloadOutcome, DownloadStatus, PageDownloadResult
from nfse_downloader.errors import AuthenticationError, ElementNotFoundError
from nfse_downloader.orchestrator import PipelineOrchestrator, compute_success_rate


class FakeSession:
    def __init__(self, cfg):
        self.cfg = cfg
        self.opened = False
        self.closed = 0

    async def open(self):
        self.opened = True
        return MagicMock(name="page")

    async def close(self):
        self.closed += 1


def _page_result(downloaded=0, skipped=0, failed=0):
    outcomes = []
    row = 1
    for status, count in (
        (DownloadStatus.DOWNLOADED, downloaded),
        (DownloadStatus.DUPLICATE, skipped),
        (DownloadStatus.FAILED, failed),
    ):
        for _ in range(count):
            outcomes.append(DownloadOutcome(row_index=row, status=status, target_path=f"/x/{row}.xml"))
            row += 1
    return PageDownloadResult(outcomes=outcomes)


class Pipeline:
    """Patches dos componentes usados pelo orquestrador."""

    def __init__(self, counts, has_next=False, page_results=None,
                 navigate_effect=None, login_effect=None):
        self.auth = MagicMock()
        self.auth.return_value.login = AsyncMock(side_effect=login_effect)

        self.navigator = MagicMock()
        self.navigator.return_value.navigate_to_reports = AsyncMock(side_effect=navigate_effect)

        self.search = MagicMock()
        search = self.search.return_value
        search.search_page = AsyncMock()
        search.count_notes = AsyncMock(side_effect=list(counts))
        search.last_rows = []
        if isinstance(has_next, list):
            search.has_next_page = AsyncMock(side_effect=has_next)
        else:
            search.has_next_page = AsyncMock(return_value=has_next)

        self.downloader = MagicMock()
        self.downloader.return_value.download_page = AsyncMock(
            side_effect=list(page_results or [])
        )

    def __enter__(self):
        self._patches = [
            patch("nfse_downloader.orchestrator.Authenticator", self.auth),
            patch("nfse_downloader.orchestrator.Navigator", self.navigator),
            patch("nfse_downloader.orchestrator.SearchDriver", self.search),
            patch("nfse_downloader.orchestrator.DownloadEngine", self.downloader),
        ]
        for p in self._patches:
            p.start()
        return self

    def __exit__(self, *exc):
        for p in self._patches:
            p.stop()
        return False


def _orchestrator(cfg, sessions, **kwargs):
    def factory(c):
        session = FakeSession(c)
        sessions.append(session)
        return session
    return PipelineOrchestrator(cfg, job_id=1, session_factory=factory, **kwargs)


class TestSuccessRate:
    def test_arredondamento(self):
        """QG: successRate é inteiro arredondado; 0 sem notas."""
        assert compute_success_rate(2, 3) == 67
        assert compute_success_rate(0, 0) == 0


class TestPipelineOrchestrator:
    """Testes do PipelineOrchestrator."""

    @pytest.mark.asyncio
    async def test_cenario_intervalo_vazio(self, cfg):
        """QG: Sem notas -> sucesso, zero páginas e zero downloads."""
        cfg = cfg.with_overrides(START_DATE="2025-07-01", END_DATE="2025-07-31")
        sessions = []
        with Pipeline(counts=[0]) as pipeline:
            report = await _orchestrator(cfg, sessions).execute()

        assert report.success
        assert report.pages_processed == 0
        assert report.notes_found == 0
        assert report.xmls_downloaded == 0
        assert report.success_rate == 0
        assert sessions[0].closed == 1
        pipeline.downloader.return_value.download_page.assert_not_called()

    @pytest.mark.asyncio
    async def test_relatorio_em_camel_case(self, cfg):
        """QG: to_dict usa as chaves do relatório externo."""
        sessions = []
        with Pipeline(counts=[3], page_results=[_page_result(downloaded=2, failed=1)]):
            report = await _orchestrator(cfg, sessions).execute()

        data = report.to_dict()
        assert data["pagesProcessed"] == 1
        assert data["notesFound"] == 3
        assert data["xmlsDownloaded"] == 2
        assert data["failures"] == 1
        assert data["successRate"] == 67
        assert data["downloadPath"] == str(cfg.download_root)
        assert data["success"] is True

    @pytest.mark.asyncio
    async def test_falha_de_periodo_nao_interrompe(self, cfg):
        """QG: Erro no primeiro período é registrado e o segundo é processado."""
        cfg = cfg.with_overrides(START_DATE="2024-01-01", END_DATE="2024-02-29")
        sessions = []
        with Pipeline(
            counts=[3],
            page_results=[_page_result(downloaded=3)],
            navigate_effect=[ElementNotFoundError("menu sumiu"), None],
        ):
            report = await _orchestrator(cfg, sessions).execute()

        assert [p.period for p in report.periods] == ["2024-01", "2024-02"]
        assert report.periods[0].error == "menu sumiu"
        assert report.periods[1].xmls_downloaded == 3
        assert report.period_errors == 1
        assert report.success

    @pytest.mark.asyncio
    async def test_erro_de_periodo_sem_downloads_falha(self, cfg):
        """QG: Nenhum download e erro de período -> success False."""
        sessions = []
        with Pipeline(counts=[], navigate_effect=[ElementNotFoundError("fora do ar")]):
            report = await _orchestrator(cfg, sessions).execute()

        assert not report.success
        assert report.period_errors == 1

    @pytest.mark.asyncio
    async def test_autenticacao_aborta(self, cfg):
        """QG: AuthenticationError propaga e o navegador é fechado."""
        sessions = []
        with Pipeline(counts=[], login_effect=AuthenticationError("Login recusado")) as pipeline:
            with pytest.raises(AuthenticationError):
                await _orchestrator(cfg, sessions).execute()

        assert sessions[0].closed == 1
        pipeline.navigator.return_value.navigate_to_reports.assert_not_called()

    @pytest.mark.asyncio
    async def test_paginacao_ate_ultima_pagina(self, cfg):
        """QG: Páginas seguem enquanto has_next_page for verdadeiro."""
        sessions = []
        snapshots = []
        with Pipeline(
            counts=[50, 50, 10],
            has_next=[True, True, False],
            page_results=[_page_result(downloaded=50), _page_result(downloaded=49, skipped=1),
                          _page_result(downloaded=10)],
        ) as pipeline:
            report = await _orchestrator(cfg, sessions, progress_callback=snapshots.append).execute()

        assert report.pages_processed == 3
        assert report.notes_found == 110
        assert report.xmls_downloaded == 109
        assert report.xmls_skipped == 1
        assert report.duplicates_detected == 1
        assert [s.current_page for s in snapshots] == [1, 2, 3]
        assert snapshots[-1].xmls_downloaded == 109
        search_calls = pipeline.search.return_value.search_page.await_args_list
        assert [c.args[0] for c in search_calls] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_limite_de_paginas(self, cfg):
        """QG: Para em MAX_PAGES mesmo que o portal indique mais páginas."""
        cfg = cfg.with_overrides(MAX_PAGES=2)
        sessions = []
        with Pipeline(
            counts=[50, 50, 50],
            has_next=True,
            page_results=[_page_result(downloaded=50)] * 3,
        ):
            report = await _orchestrator(cfg, sessions).execute()

        assert report.pages_processed == 2

    @pytest.mark.asyncio
    async def test_cancelamento_entre_paginas(self, cfg):
        """QG: should_continue falso após a primeira página interrompe a execução."""
        cfg = cfg.with_overrides(START_DATE="2024-01-01", END_DATE="2024-03-31")
        sessions = []
        answers = iter([True])

        with Pipeline(
            counts=[50, 50],
            has_next=True,
            page_results=[_page_result(downloaded=50)] * 2,
        ):
            orchestrator = _orchestrator(
                cfg, sessions, should_continue=lambda: next(answers, False)
            )
            report = await orchestrator.execute()

        assert report.cancelled
        assert report.pages_processed == 1
        assert len(report.periods) == 1
        assert sessions[0].closed == 1
