"""
Autenticação no portal NFSe.

O login acontece uma vez por execução e é reutilizado por todos os
períodos. Qualquer falha aqui vira AuthenticationError, que é fatal.
"""

import logging

from playwright.async_api import Page

from .browser import wait_any
from .config import Config
from .errors import AuthenticationError
from .resilience import retry_with_backoff_async

logger = logging.getLogger(__name__)

LOGIN_FIELD = "#login_nfse"
PASSWORD_FIELD = "#senha_nfse_digite"
SUBMIT_TARGET = "div.pt-0 h5"

LOGGED_IN_SELECTORS = (
    'a[href*="relatorio"]',
    'a[href*="logout"]',
    ".menu",
    ".navbar",
)


class Authenticator:
    """Realiza o login com CNPJ e senha."""

    def __init__(self, page: Page, cfg: Config):
        self.page = page
        self.config = cfg

    async def login(self, username: str, password: str) -> None:
        """
        Faz login no portal.

        Raises:
            AuthenticationError: credenciais ausentes, formulário indisponível
                ou portal ainda na tela de login após o envio
        """
        masked = Config.mask_cnpj(username)
        if not username or not password:
            raise AuthenticationError("Credenciais não informadas")

        logger.info(f"[AUTH] Iniciando login para {masked}")
        try:
            await self._open_login_page()

            await self.page.wait_for_selector(LOGIN_FIELD, timeout=self.config.ELEMENT_TIMEOUT_MS)
            await self.page.fill(LOGIN_FIELD, username)
            await self.page.wait_for_selector(PASSWORD_FIELD, timeout=self.config.ELEMENT_TIMEOUT_MS)
            await self.page.fill(PASSWORD_FIELD, password)

            await self.page.wait_for_selector(SUBMIT_TARGET, timeout=self.config.ELEMENT_TIMEOUT_MS)
            await self.page.click(SUBMIT_TARGET)
            await self.page.wait_for_load_state(
                "domcontentloaded", timeout=self.config.NAVIGATION_TIMEOUT_MS
            )
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Falha no login: {e}", cnpj=masked) from e

        if not await self.is_logged_in():
            raise AuthenticationError(
                "Login recusado: portal permaneceu na tela de login", cnpj=masked
            )

        logger.info(f"[AUTH] Login realizado com sucesso para {masked}")

    @retry_with_backoff_async(max_retries=2, base_delay=2.0)
    async def _open_login_page(self) -> None:
        await self.page.goto(
            self.config.login_url,
            wait_until="domcontentloaded",
            timeout=self.config.NAVIGATION_TIMEOUT_MS,
        )

    async def is_logged_in(self) -> bool:
        if "out=2" in self.page.url:
            return False
        found = await wait_any(self.page, LOGGED_IN_SELECTORS, timeout_ms=2000)
        if found:
            logger.debug(f"[AUTH] Elemento de sessão encontrado: {found}")
        return found is not None
