"""
Runner Principal - NFSe Downloader.

Uso:
    python -m nfse_downloader run --start 2024-01-01 --end 2024-03-31
    python -m nfse_downloader run --cnpj 12345678000199 --no-headless -v
    python -m nfse_downloader serve --port 8000

Credenciais e período também podem vir do .env (XMLITZ_USERNAME,
XMLITZ_PASSWORD, XMLITZ_START_DATE, XMLITZ_END_DATE).
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import Config
from .errors import AuthenticationError, InvalidParametersError
from .ingest import build_ingestion_sink
from .orchestrator import PipelineOrchestrator
from .validators import validate_params

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_dir: str = "logs") -> None:
    """Console + arquivo diário em log_dir."""
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(
                Path(log_dir) / f"nfse_downloader_{datetime.now().strftime('%Y%m%d')}.log",
                encoding='utf-8'
            )
        ],
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download de XMLs de NFSe do portal municipal"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Modo verboso (debug)"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Executa um download e imprime o relatório")
    run.add_argument("--cnpj", help="CNPJ/CPF de login (default: XMLITZ_USERNAME)")
    run.add_argument("--password", help="Senha (default: XMLITZ_PASSWORD)")
    run.add_argument("--start", help="Data inicial YYYY-MM-DD (default: XMLITZ_START_DATE)")
    run.add_argument("--end", help="Data final YYYY-MM-DD (default: XMLITZ_END_DATE)")
    run.add_argument("--download-path", help="Pasta raiz dos XMLs organizados")
    run.add_argument("--max-retries", type=int, help="Retries por XML (1-10)")
    run.add_argument(
        "--no-headless",
        action="store_true",
        help="Abre o navegador visível"
    )

    serve = commands.add_parser("serve", help="Sobe a API HTTP de execuções")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    return parser


async def run_once(cfg: Config) -> int:
    """Executa o pipeline uma vez; retorna o código de saída."""
    orchestrator = PipelineOrchestrator(cfg, ingestion_sink=build_ingestion_sink(cfg))
    report = await orchestrator.execute()

    logger.info("=" * 60)
    logger.info("RELATÓRIO FINAL")
    logger.info(f"  - Páginas processadas: {report.pages_processed}")
    logger.info(f"  - Notas encontradas: {report.notes_found}")
    logger.info(f"  - XMLs baixados: {report.xmls_downloaded}")
    logger.info(f"  - XMLs pulados: {report.xmls_skipped}")
    logger.info(f"  - Falhas: {report.failures}")
    logger.info(f"  - Taxa de sucesso: {report.success_rate}%")
    logger.info(f"  - Pasta: {report.download_path}")
    logger.info("=" * 60)

    return 0 if report.success else 1


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point do script."""
    args = build_parser().parse_args(argv)
    base = Config()
    setup_logging("DEBUG" if args.verbose else base.LOG_LEVEL, base.LOG_DIR)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("nfse_downloader.api:app", host=args.host, port=args.port)
        return

    try:
        params = validate_params({
            "cnpj": args.cnpj or base.USERNAME,
            "password": args.password or base.PASSWORD,
            "start_date": args.start or base.START_DATE,
            "end_date": args.end or base.END_DATE,
            "headless": False if args.no_headless else None,
            "max_retries": args.max_retries,
            "download_path": args.download_path,
        })
        cfg = base.with_overrides(**params.config_overrides())
        sys.exit(asyncio.run(run_once(cfg)))

    except InvalidParametersError as e:
        logger.error(str(e))
        sys.exit(2)
    except AuthenticationError as e:
        logger.error(f"Falha de autenticação: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Execução interrompida pelo usuário")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Erro fatal: {e}")
        sys.exit(1)
