"""
Teste da sessão de navegador, login e navegação
===============================================
Verifica que:
1. Recursos não essenciais e rastreadores são bloqueados
2. Login falho vira AuthenticationError
3. Navegação até o relatório tenta menu e depois URL
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakes import FakePage
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from nfse_downloader.auth import LOGIN_FIELD, PASSWORD_FIELD, Authenticator
from nfse_downloader.browser import BrowserSession, wait_any
from nfse_downloader.errors import (
    AuthenticationError,
    ElementNotFoundError,
    NavigationTimeoutError,
    NetworkError,
)
from nfse_downloader.navigation import Navigator


class TestShouldBlock:
    """Testes do filtro de requisições."""

    @pytest.mark.parametrize("resource_type", ["image", "font", "stylesheet", "media"])
    def test_tipos_bloqueados(self, cfg, resource_type):
        assert BrowserSession(cfg).should_block(resource_type, "https://portal/x")

    def test_rastreadores_bloqueados(self, cfg):
        """QG: URLs de analytics são bloqueadas mesmo sendo script."""
        session = BrowserSession(cfg)

        assert session.should_block("script", "https://www.google-analytics.com/ga.js")
        assert session.should_block("xhr", "https://site/cdn-cgi/rum?x=1")

    def test_documento_do_portal_liberado(self, cfg):
        assert not BrowserSession(cfg).should_block("document", cfg.reports_url)

    @pytest.mark.asyncio
    async def test_dialogo_aceito_e_aguardado(self, cfg):
        """QG: O handler de diálogo aguarda o accept, sem tarefa solta."""
        dialog = MagicMock(type="alert", message="Sessão expirada")
        dialog.accept = AsyncMock()

        await BrowserSession(cfg)._on_dialog(dialog)

        dialog.accept.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_sem_open(self, cfg):
        """QG: close pode ser chamado mesmo sem open, mais de uma vez."""
        session = BrowserSession(cfg)

        await session.close()
        await session.close()


class TestWaitAny:
    @pytest.mark.asyncio
    async def test_primeiro_disponivel(self):
        page = FakePage(unavailable=["#a"])

        assert await wait_any(page, ["#a", "#b"], timeout_ms=10) == "#b"
        assert await wait_any(FakePage(unavailable=["#"]), ["#a"], timeout_ms=10) is None


class TestAuthenticator:
    """Testes do login."""

    @pytest.mark.asyncio
    async def test_login_com_sucesso(self, cfg):
        """QG: Preenche CNPJ e senha e confirma a sessão."""
        page = FakePage()
        auth = Authenticator(page, cfg)

        async def goto(url, **kwargs):
            page.url = "https://portal/index.php?pg=inicio" if url == cfg.login_url else url
        page.goto = goto

        await auth.login("12345678000199", "segredo")

        assert page.filled == {LOGIN_FIELD: "12345678000199", PASSWORD_FIELD: "segredo"}

    @pytest.mark.asyncio
    async def test_permanece_na_tela_de_login(self, cfg):
        """QG: URL com out=2 após envio -> AuthenticationError."""
        page = FakePage()

        with pytest.raises(AuthenticationError):
            await Authenticator(page, cfg).login("12345678000199", "errada")

    @pytest.mark.asyncio
    async def test_formulario_ausente(self, cfg):
        """QG: Campo de login ausente vira AuthenticationError."""
        page = FakePage(unavailable=[LOGIN_FIELD])

        with pytest.raises(AuthenticationError):
            await Authenticator(page, cfg).login("12345678000199", "segredo")

    @pytest.mark.asyncio
    async def test_credenciais_ausentes(self, cfg):
        with pytest.raises(AuthenticationError):
            await Authenticator(FakePage(), cfg).login("", "")


class TestNavigator:
    """Testes da navegação até o relatório."""

    @pytest.mark.asyncio
    async def test_via_menu(self, cfg):
        """QG: Clique no menu leva ao relatório sem usar a URL direta."""
        page = FakePage()

        async def click(selector, timeout=None):
            page.clicks.append(selector)
            page.url = cfg.reports_url
        page.click = click

        await Navigator(page, cfg).navigate_to_reports()

        assert page.clicks == ['a[href*="relatorio"]']
        assert page.visited == []

    @pytest.mark.asyncio
    async def test_via_url_quando_menu_falha(self, cfg):
        """QG: Sem menu, navega direto para a URL do relatório."""
        page = FakePage(unavailable=["a[href"])

        await Navigator(page, cfg).navigate_to_reports()

        assert page.visited == [cfg.reports_url]

    @pytest.mark.asyncio
    async def test_relatorio_nao_encontrado(self, cfg):
        """QG: Formulário do relatório ausente -> ElementNotFoundError."""
        page = FakePage(unavailable=["a[href", "#dt_inicial", "#formrelatorio", ".relatorio"])

        with pytest.raises(ElementNotFoundError):
            await Navigator(page, cfg).navigate_to_reports()

    @pytest.mark.asyncio
    async def test_timeout_na_url_vira_navigation_timeout(self, cfg, monkeypatch):
        """QG: Timeout do goto é reclassificado e tentado novamente antes de propagar."""
        monkeypatch.setattr("nfse_downloader.resilience.asyncio.sleep", AsyncMock())
        page = FakePage(unavailable=["a[href"])
        page.goto = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 30000ms exceeded"))

        with pytest.raises(NavigationTimeoutError):
            await Navigator(page, cfg).navigate_to_reports()

        assert page.goto.await_count == 3

    @pytest.mark.asyncio
    async def test_erro_de_rede_vira_network_error(self, cfg, monkeypatch):
        monkeypatch.setattr("nfse_downloader.resilience.asyncio.sleep", AsyncMock())
        page = FakePage(unavailable=["a[href"])
        page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_CONNECTION_RESET"))

        with pytest.raises(NetworkError):
            await Navigator(page, cfg).navigate_to_reports()
