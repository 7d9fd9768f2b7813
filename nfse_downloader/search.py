"""
Driver de Pesquisa e Paginação.

Responsável por:
1. Preencher o formulário de datas (página 1) ou montar a URL da página n
2. Confirmar que a pesquisa carregou (tabela ou mensagem de "sem resultados")
3. Contar as linhas que são notas de verdade
4. Decidir se existe próxima página

A convenção de paginação (pageNum_documento / totalRows_documento) é do
portal; aqui ela só é reproduzida.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlencode

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import Config
from .errors import ElementNotFoundError
from .periods import Period

logger = logging.getLogger(__name__)

DATE_START_FIELD = "#dt_inicial"
DATE_END_FIELD = "#dt_final"

SEARCH_BUTTON_SELECTORS = (
    "div.card-body button",
    'button[type="submit"]',
    'button:has-text("Pesquisar")',
    'input[type="submit"][value*="Pesquisar"]',
)

RESULT_SELECTORS = (
    "tr:nth-of-type(1) button.dropdown-toggle",
    "table tbody tr",
    "tbody tr",
    "tbody",
)

NO_RESULTS_MESSAGES = (
    "nenhum resultado encontrado",
    "não foram encontrados",
    "sem resultados",
    "no results",
    "nenhuma nota fiscal",
)

HEADER_MARKERS = ("Número", "Data de", "Valor", "Status", "Ações")
PAGINATION_MARKERS = ("Anterior", "Próximo", "Página")
MIN_ROW_TEXT = 20

# Scripts executados na página
ROWS_SCRIPT = """() => Array.from(document.querySelectorAll('tbody tr')).map(row => ({
    text: (row.textContent || '').trim(),
    hasButton: row.querySelector('button') !== null
}))"""

LINK_TEXTS_SCRIPT = """() => Array.from(document.querySelectorAll('a'))
    .map(a => (a.textContent || '').trim().toLowerCase())"""

BODY_TEXT_SCRIPT = """() => document.body ? document.body.textContent.toLowerCase() : ''"""

HAS_CHILDREN_SCRIPT = """(sel) => {
    const el = document.querySelector(sel);
    return !!el && el.children.length > 0;
}"""


@dataclass
class RowInfo:
    text: str
    has_button: bool


@dataclass
class RowFilterResult:
    """Linhas válidas (índices 1-based em 'tbody tr') e contagem dos descartes."""
    valid_rows: List[int] = field(default_factory=list)
    filtered_out: Dict[str, int] = field(default_factory=lambda: {
        "headers": 0, "empty": 0, "pagination": 0, "no_button": 0,
    })
    total_rows: int = 0


def classify_rows(rows: Sequence[RowInfo]) -> RowFilterResult:
    """Filtra cabeçalhos, linhas vazias, paginação e linhas sem botão de ação."""
    result = RowFilterResult(total_rows=len(rows))
    for index, row in enumerate(rows, start=1):
        text = row.text.strip()
        if any(marker in text for marker in HEADER_MARKERS):
            result.filtered_out["headers"] += 1
        elif len(text) < MIN_ROW_TEXT:
            result.filtered_out["empty"] += 1
        elif any(marker in text for marker in PAGINATION_MARKERS):
            result.filtered_out["pagination"] += 1
        elif not row.has_button:
            result.filtered_out["no_button"] += 1
        else:
            result.valid_rows.append(index)
    return result


def is_next_link(text: str) -> bool:
    text = text.strip().lower()
    return "próxima" in text or "next" in text or text == ">"


class SearchDriver:
    """Pesquisa de notas para um período."""

    def __init__(self, page: Page, cfg: Config, period: Period):
        self.page = page
        self.config = cfg
        self.period = period
        self.current_page = 0
        self.last_count: Optional[int] = None
        self.last_rows: List[int] = []

    def build_search_url(self, page_number: int) -> str:
        params = {
            "pageNum_documento": str(page_number),
            "totalRows_documento": str(self.config.PAGE_SIZE),
            "nr_nferps_ini": "",
            "nr_nferps_fim": "",
            "dt_inicial": self.period.start_iso,
            "dt_final": self.period.end_iso,
            "vl_inicial": "",
            "vl_final": "",
            "st_rps": "1",
            "nr_doc": "",
            "cd_atividade": "",
            "tp_codigo": "lc116",
            "tp_doc": "1",
            "ordem": "DESC",
            "consulta": "1",
            "pg": "relatorio",
        }
        return f"{self.config.PORTAL_BASE_URL}?{urlencode(params)}"

    async def search_page(self, page_number: int = 1) -> None:
        """
        Executa a pesquisa da página informada.

        Raises:
            ElementNotFoundError: formulário/botão ausente ou resultado não confirmado
        """
        logger.info(f"[SEARCH] Pesquisando {self.period.label} página {page_number}")
        self.current_page = page_number
        self.last_count = None
        self.last_rows = []

        if page_number == 1:
            await self.fill_search_form()
        else:
            await self.page.goto(
                self.build_search_url(page_number),
                wait_until="domcontentloaded",
                timeout=self.config.NAVIGATION_TIMEOUT_MS,
            )

        await asyncio.sleep(self.config.SEARCH_SETTLE_MS / 1000)

        if not await self.verify_search_results(page_number):
            raise ElementNotFoundError(
                "Falha na verificação dos resultados da pesquisa",
                period=self.period.label,
                page=page_number,
            )

    async def fill_search_form(self) -> None:
        if "pg=relatorio" not in self.page.url:
            await self.page.goto(
                self.config.reports_url,
                wait_until="domcontentloaded",
                timeout=self.config.NAVIGATION_TIMEOUT_MS,
            )

        try:
            await self.page.wait_for_selector(DATE_START_FIELD, timeout=self.config.ELEMENT_TIMEOUT_MS)
            await self.page.wait_for_selector(DATE_END_FIELD, timeout=self.config.ELEMENT_TIMEOUT_MS)
        except PlaywrightTimeoutError as e:
            raise ElementNotFoundError(
                "Campos de data não encontrados", period=self.period.label
            ) from e

        await self.page.fill(DATE_START_FIELD, self.period.start_iso)
        await self.page.fill(DATE_END_FIELD, self.period.end_iso)

        for selector in SEARCH_BUTTON_SELECTORS:
            try:
                await self.page.wait_for_selector(selector, timeout=self.config.STRATEGY_TIMEOUT_MS)
                await self.page.click(selector)
                await self.page.wait_for_load_state(
                    "domcontentloaded", timeout=self.config.NAVIGATION_TIMEOUT_MS
                )
                logger.debug(f"[SEARCH] Botão de pesquisa clicado: {selector}")
                return
            except PlaywrightTimeoutError:
                logger.debug(f"[SEARCH] Seletor de botão falhou: {selector}")

        raise ElementNotFoundError(
            "Não foi possível encontrar o botão de pesquisa", period=self.period.label
        )

    async def verify_search_results(self, page_number: int) -> bool:
        url = self.page.url
        has_params = "consulta=1" in url and "dt_inicial=" in url and "dt_final=" in url
        if not has_params and page_number > 1:
            logger.warning(f"[SEARCH] URL sem parâmetros de pesquisa: {url}")
            return False

        for selector in RESULT_SELECTORS:
            try:
                await self.page.wait_for_selector(selector, timeout=2000)
            except PlaywrightTimeoutError:
                continue
            if "dropdown-toggle" in selector:
                return True
            if await self.page.evaluate(HAS_CHILDREN_SCRIPT, selector):
                return True

        body = await self.page.evaluate(BODY_TEXT_SCRIPT)
        for message in NO_RESULTS_MESSAGES:
            if message in body:
                logger.info(f"[SEARCH] Pesquisa sem resultados ({message})")
                return True

        logger.warning("[SEARCH] Nenhum elemento de resultado encontrado")
        return False

    async def count_notes(self) -> int:
        """
        Conta as linhas de nota da página atual.

        Tabela ausente conta como zero.
        """
        try:
            await self.page.wait_for_selector("tbody tr", timeout=self.config.ELEMENT_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            logger.info("[SEARCH] Tabela não encontrada, considerando 0 notas")
            self.last_count = 0
            self.last_rows = []
            return 0

        raw_rows = await self.page.evaluate(ROWS_SCRIPT) or []
        rows = [RowInfo(text=r.get("text", ""), has_button=bool(r.get("hasButton"))) for r in raw_rows]
        result = classify_rows(rows)

        logger.debug(
            f"[SEARCH] {result.total_rows} linhas, {len(result.valid_rows)} notas, "
            f"descartes={result.filtered_out}"
        )
        self.last_rows = result.valid_rows
        self.last_count = len(result.valid_rows)
        return self.last_count

    async def has_next_page(self) -> bool:
        """Só existe próxima página se esta veio cheia e há link de avanço."""
        count = self.last_count if self.last_count is not None else await self.count_notes()
        if count < self.config.PAGE_SIZE:
            logger.debug(f"[SEARCH] Última página ({count} < {self.config.PAGE_SIZE})")
            return False

        link_texts = await self.page.evaluate(LINK_TEXTS_SCRIPT) or []
        return any(is_next_link(text) for text in link_texts)