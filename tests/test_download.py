"""
Teste do motor de download com retry
====================================
Verifica que:
1. Estratégias de seletor são tentadas em ordem (fallback sem retry)
2. Retry com reload no segundo retry e limite MAX_RETRIES + 1
3. Invariante successful + failed + skipped == attempts
4. Verificação pré-download pula sem tocar no navegador
5. Ingestão só roda após página com download
"""
import json

import pytest
from fakes import FakePage, nfse_xml

from nfse_downloader.dedup import DeduplicationEngine
from nfse_downloader.download import (
    DownloadEngine,
    DownloadStats,
    DownloadStatus,
    extract_note_number,
)
from nfse_downloader.ingest import JsonlIngestionSink
from nfse_downloader.periods import Period

CNPJ = "12345678000199"
JANEIRO = Period.for_month(2024, 1)


def _engine(cfg, page, staging_dir, sink=None, stats=None):
    return DownloadEngine(
        page,
        cfg,
        DeduplicationEngine(cfg),
        cnpj=CNPJ,
        period=JANEIRO,
        staging_dir=staging_dir,
        ingestion_sink=sink,
        stats=stats,
        job_id=1,
    )


def _xml_download(name, numero, codigo="ABC"):
    return (name, nfse_xml(numero, codigo).encode("utf-8"))


class TestExtractNoteNumber:
    """Testes do número da nota exibido na linha."""

    def test_numero_longo(self):
        """QG: 9-10 dígitos são o número da nota."""
        assert extract_note_number(["", "202400123", "15/01/2024"]) == "202400123"

    def test_fallback_sem_data(self):
        """QG: 6-8 dígitos só valem em célula sem data."""
        assert extract_note_number(["15/01/2024 123456"]) is None
        assert extract_note_number(["Nota 123456"]) == "123456"

    def test_sem_numero(self):
        assert extract_note_number(["abc", "R$ 10,00"]) is None


class TestEstrategias:
    """Testes do fallback de seletores."""

    @pytest.mark.asyncio
    async def test_cenario_fallback_de_dropdown(self, cfg, staging_dir):
        """QG: Duas primeiras estratégias de dropdown falham, a terceira abre o menu."""
        page = FakePage(
            unavailable=[".dropdown-toggle"],
            downloads={1: [_xml_download("nfse-1.xml", "1")]},
        )
        engine = _engine(cfg, page, staging_dir)

        outcome = await engine.download_single(1)

        assert outcome.status == DownloadStatus.DOWNLOADED
        assert outcome.attempts == 1
        assert outcome.dropdown_strategy == "bs-toggle"
        assert outcome.link_strategy == "terceiro-link"
        assert engine.stats.retries == 0
        assert (cfg.download_root / "2024" / "01" / CNPJ / "nfse-1.xml").exists()

    @pytest.mark.asyncio
    async def test_fallback_de_link(self, cfg, staging_dir):
        """QG: Link do XML encontrado pela estratégia href quando as anteriores falham."""
        page = FakePage(
            unavailable=["a:nth-of-type(3)", "a:last-child"],
            downloads={2: [_xml_download("nfse-2.xml", "2")]},
        )
        engine = _engine(cfg, page, staging_dir)

        outcome = await engine.download_single(2)

        assert outcome.status == DownloadStatus.DOWNLOADED
        assert outcome.link_strategy == "href-xml"


class TestRetry:
    """Testes do loop de retry."""

    @pytest.mark.asyncio
    async def test_sucesso_no_terceiro_intento_com_reload(self, cfg, staging_dir):
        """QG: Dois downloads perdidos, sucesso no terceiro; reload após a segunda falha."""
        page = FakePage(downloads={1: [None, None, _xml_download("nfse-1.xml", "1")]})
        engine = _engine(cfg, page, staging_dir)

        outcome = await engine.download_single(1)

        assert outcome.status == DownloadStatus.DOWNLOADED
        assert outcome.attempts == 3
        assert engine.stats.retries == 2
        assert page.reloads == 1
        assert page.keyboard.pressed == ["Escape", "Escape"]

    @pytest.mark.asyncio
    async def test_falha_apos_max_retries(self, cfg, staging_dir):
        """QG: Sem download nunca, a linha falha após MAX_RETRIES + 1 tentativas."""
        page = FakePage(downloads={})
        engine = _engine(cfg, page, staging_dir)

        outcome = await engine.download_single(1)

        assert outcome.status == DownloadStatus.FAILED
        assert outcome.attempts == cfg.MAX_RETRIES + 1
        assert outcome.error_type == "download_failure"
        assert engine.stats.failed == 1
        assert engine.stats.retries == cfg.MAX_RETRIES

    @pytest.mark.asyncio
    async def test_dropdown_ausente_vira_element_not_found(self, cfg, staging_dir):
        """QG: Nenhuma estratégia de dropdown -> falha element_not_found."""
        page = FakePage(unavailable=["dropdown"])
        engine = _engine(cfg.with_overrides(MAX_RETRIES=1), page, staging_dir)

        outcome = await engine.download_single(1)

        assert outcome.status == DownloadStatus.FAILED
        assert outcome.attempts == 2
        assert outcome.error_type == "element_not_found"

    @pytest.mark.asyncio
    async def test_arquivo_nao_xml_e_rejeitado(self, cfg, staging_dir):
        """QG: Download que não é .xml conta como falha e não fica no staging."""
        page = FakePage(downloads={1: [("relatorio.pdf", b"%PDF")] * 4})
        engine = _engine(cfg, page, staging_dir)

        outcome = await engine.download_single(1)

        assert outcome.status == DownloadStatus.FAILED
        assert not (staging_dir / "relatorio.pdf").exists()


class TestDownloadPage:
    """Testes de uma página inteira."""

    @pytest.mark.asyncio
    async def test_invariante_das_estatisticas(self, cfg, staging_dir):
        """QG: successful + failed + skipped == attempts, uma tentativa por linha."""
        cfg = cfg.with_overrides(MAX_RETRIES=1)
        page = FakePage(downloads={
            1: [_xml_download("nfse-1.xml", "1")],
            2: [_xml_download("nfse-1-copia.xml", "1")],
            3: [],
            4: [_xml_download("nfse-4.xml", "4")],
        })
        stats = DownloadStats()
        engine = _engine(cfg, page, staging_dir, stats=stats)

        result = await engine.download_page([1, 2, 3, 4], page_number=1)

        assert result.successful == 2
        assert result.skipped == 1
        assert result.failed == 1
        assert stats.attempts == 4
        assert stats.successful + stats.failed + stats.skipped == stats.attempts
        assert stats.duplicates == 1
        assert stats.to_dict()["success_rate"] == 50.0

        copy = next(o for o in result.outcomes if o.row_index == 2)
        assert copy.status == DownloadStatus.DUPLICATE
        assert copy.reason == "content_duplicate"
        assert copy.duplicate_of == "nfse-1.xml"

    @pytest.mark.asyncio
    async def test_precheck_pula_sem_clicar(self, cfg, staging_dir):
        """QG: Nota já presente no bucket é pulada antes de qualquer clique."""
        bucket = cfg.download_root / "2024" / "01" / CNPJ
        bucket.mkdir(parents=True)
        (bucket / "NFSe_202400077.xml").write_text("<x/>")
        page = FakePage(row_cells={1: ["202400077", "15/01/2024"]})
        engine = _engine(cfg, page, staging_dir)

        result = await engine.download_page([1])

        outcome = result.outcomes[0]
        assert outcome.status == DownloadStatus.SKIPPED
        assert outcome.reason == "note_exists"
        assert outcome.attempts == 0
        assert page.clicks == []
        assert engine.stats.skipped == 1

    @pytest.mark.asyncio
    async def test_ingestao_apos_pagina(self, cfg, staging_dir):
        """QG: XMLs organizados na página são enviados ao sink."""
        sink = JsonlIngestionSink(cfg.INGEST_JSONL_PATH)
        page = FakePage(downloads={
            1: [_xml_download("nfse-10.xml", "10")],
            2: [_xml_download("nfse-11.xml", "11")],
        })
        engine = _engine(cfg, page, staging_dir, sink=sink)

        result = await engine.download_page([1, 2])

        assert result.ingest.total == 2
        assert result.ingest.success == 2
        lines = open(cfg.INGEST_JSONL_PATH, encoding="utf-8").read().splitlines()
        assert sorted(json.loads(line)["numero"] for line in lines) == ["10", "11"]

    @pytest.mark.asyncio
    async def test_sem_download_nao_chama_ingestao(self, cfg, staging_dir):
        """QG: Página sem nenhum download não aciona o sink."""
        calls = []

        class Sink:
            async def process_files(self, paths):
                calls.append(paths)

        page = FakePage(downloads={})
        engine = _engine(cfg.with_overrides(MAX_RETRIES=0), page, staging_dir, sink=Sink())

        result = await engine.download_page([1])

        assert result.ingest is None
        assert calls == []
