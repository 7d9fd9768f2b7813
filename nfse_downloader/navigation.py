"""Navegação até a tela de relatório de notas (superfície de busca)."""

import logging

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .browser import wait_any
from .config import Config
from .errors import ElementNotFoundError, NavigationTimeoutError, NetworkError
from .resilience import retry_with_backoff_async

logger = logging.getLogger(__name__)

MENU_SELECTORS = (
    'a[href*="relatorio"]',
    '.menu a[href*="relatorio"]',
    '.navbar a[href*="relatorio"]',
)

REPORT_SELECTORS = (
    "#dt_inicial",
    "#formrelatorio",
    ".relatorio",
)


class Navigator:
    """Leva a página até o formulário de pesquisa de notas."""

    def __init__(self, page: Page, cfg: Config):
        self.page = page
        self.config = cfg

    async def navigate_to_reports(self) -> None:
        """
        Tenta primeiro pelo menu e depois pela URL direta.

        Raises:
            ElementNotFoundError: se a tela de relatório não for confirmada
        """
        if await self._via_menu() and await self.is_on_reports():
            logger.info("Relatório aberto pelo menu")
            return

        await self._via_url()
        if await self.is_on_reports():
            logger.info("Relatório aberto pela URL direta")
            return

        raise ElementNotFoundError(
            "Tela de relatório não encontrada após navegação", url=self.page.url
        )

    async def _via_menu(self) -> bool:
        for selector in MENU_SELECTORS:
            try:
                await self.page.wait_for_selector(selector, timeout=self.config.STRATEGY_TIMEOUT_MS)
                await self.page.click(selector)
                await self.page.wait_for_load_state(
                    "domcontentloaded", timeout=self.config.NAVIGATION_TIMEOUT_MS
                )
                return True
            except PlaywrightTimeoutError:
                logger.debug(f"Seletor de menu falhou: {selector}")
        return False

    @retry_with_backoff_async(max_retries=2, base_delay=2.0)
    async def _via_url(self) -> None:
        url = self.config.reports_url
        try:
            await self.page.goto(
                url, wait_until="domcontentloaded", timeout=self.config.NAVIGATION_TIMEOUT_MS
            )
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"Timeout ao abrir relatório: {e}", url=url) from e
        except PlaywrightError as e:
            if "net::" in str(e):
                raise NetworkError(f"Falha de rede ao abrir relatório: {e}", url=url) from e
            raise

    async def is_on_reports(self) -> bool:
        if "relatorio" not in self.page.url:
            return False
        return await wait_any(self.page, REPORT_SELECTORS, timeout_ms=2000) is not None
