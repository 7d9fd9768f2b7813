"""
Sessão de navegador (Playwright).

Responsável por:
1. Iniciar o Chromium (headless configurável)
2. Criar contexto/página com viewport, locale e downloads habilitados
3. Aceitar diálogos automaticamente
4. Bloquear recursos não essenciais (imagens, fontes, CSS, rastreadores)

Requer: playwright (pip install playwright && playwright install chromium)
"""

import logging
from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import (
    Browser,
    BrowserContext,
    Dialog,
    Page,
    Playwright,
    Route,
    async_playwright,
)

from .config import Config

logger = logging.getLogger(__name__)


class BrowserSession:
    """Uma sessão de navegador por execução."""

    def __init__(self, cfg: Config):
        self.config = cfg
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.blocked_requests = 0

    async def open(self) -> Page:
        """Inicia o navegador e retorna a página pronta para uso."""
        self.playwright = await async_playwright().start()
        self.browser = await self.playwright.chromium.launch(
            headless=self.config.HEADLESS,
            args=[
                "--no-sandbox",
                "--disable-dev-shm-usage",
                "--disable-blink-features=AutomationControlled",
            ],
        )
        self.context = await self.browser.new_context(
            viewport={
                "width": self.config.VIEWPORT_WIDTH,
                "height": self.config.VIEWPORT_HEIGHT,
            },
            user_agent=self.config.USER_AGENT,
            locale=self.config.LOCALE,
            timezone_id=self.config.TIMEZONE_ID,
            accept_downloads=True,
        )
        self.context.set_default_timeout(self.config.ELEMENT_TIMEOUT_MS)
        self.context.set_default_navigation_timeout(self.config.NAVIGATION_TIMEOUT_MS)

        self.page = await self.context.new_page()
        self.page.on("dialog", self._on_dialog)
        await self.page.route("**/*", self._filter_request)

        logger.info(
            f"Navegador iniciado (headless={self.config.HEADLESS}, "
            f"viewport={self.config.VIEWPORT_WIDTH}x{self.config.VIEWPORT_HEIGHT})"
        )
        return self.page

    async def _on_dialog(self, dialog: Dialog) -> None:
        logger.info(f"Diálogo aceito automaticamente ({dialog.type}): {dialog.message}")
        await dialog.accept()

    def should_block(self, resource_type: str, url: str) -> bool:
        if resource_type in self.config.BLOCKED_RESOURCE_TYPES:
            return True
        url_lower = url.lower()
        return any(pattern in url_lower for pattern in self.config.BLOCKED_URL_PATTERNS)

    async def _filter_request(self, route: Route) -> None:
        request = route.request
        if self.should_block(request.resource_type, request.url):
            self.blocked_requests += 1
            await route.abort()
        else:
            await route.continue_()

    async def close(self) -> None:
        """Fecha tudo. Pode ser chamado mais de uma vez."""
        if self.context:
            await self.context.close()
            self.context = None
        if self.browser:
            await self.browser.close()
            self.browser = None
        if self.playwright:
            await self.playwright.stop()
            self.playwright = None
        self.page = None
        logger.info(f"Navegador encerrado ({self.blocked_requests} requisições bloqueadas)")

    async def __aenter__(self) -> Page:
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def wait_any(page: Page, selectors, timeout_ms: int) -> Optional[str]:
    """
    Aguarda o primeiro seletor da lista que aparecer na página.

    Returns:
        O seletor encontrado ou None se nenhum apareceu no timeout
    """
    for selector in selectors:
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
            return selector
        except PlaywrightTimeoutError:
            continue
    return None
