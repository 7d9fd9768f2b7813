"""
Módulo de Ingestão de NFSe.

Responsável por:
1. Extrair os campos principais de cada XML organizado
2. Persistir os registros de forma idempotente (checksum)
3. Emitir JSONL local ou gravar no Supabase

Registros repetidos (mesmo checksum) são aceitos como no-op, não como erro.
"""

import asyncio
import hashlib
import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Set

import aiofiles
import aiofiles.os
from supabase import Client, create_client

from .config import Config

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Resumo de um lote de ingestão."""
    total: int = 0
    success: int = 0
    errors: int = 0
    duplicates: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "success": self.success,
            "errors": self.errors,
            "duplicates": self.duplicates,
        }


@dataclass
class NFSeRecord:
    """Campos extraídos de uma NFSe."""
    checksum: str
    arquivo: str
    numero: Optional[str] = None
    codigo_verificacao: Optional[str] = None
    competencia: Optional[str] = None
    data_emissao: Optional[str] = None
    valor_servicos: Optional[float] = None
    prestador_cnpj: Optional[str] = None
    tomador_documento: Optional[str] = None
    ingested_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class IngestionSink(Protocol):
    """Destino dos XMLs organizados."""

    async def process_files(self, paths: Sequence[str]) -> IngestResult:
        ...


# =============================================================================
# PARSING
# =============================================================================

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _first_text(root: ET.Element, name: str) -> Optional[str]:
    for element in root.iter():
        if _local(element.tag) == name and element.text and element.text.strip():
            return element.text.strip()
    return None


def _first_under(root: ET.Element, parent: str, names: Sequence[str]) -> Optional[str]:
    for element in root.iter():
        if _local(element.tag) != parent:
            continue
        for name in names:
            value = _first_text(element, name)
            if value:
                return value
    return None


async def parse_nfse_file(path: str) -> NFSeRecord:
    """
    Extrai um NFSeRecord do XML.

    Raises:
        ET.ParseError: XML malformado
        OSError: arquivo inacessível
    """
    async with aiofiles.open(path, "rb") as f:
        raw = await f.read()
    root = ET.fromstring(raw)

    valor = _first_text(root, "ValorServicos")
    competencia = _first_text(root, "Competencia")
    data_emissao = _first_text(root, "DataEmissao")

    return NFSeRecord(
        checksum=hashlib.sha256(raw).hexdigest(),
        arquivo=Path(path).name,
        numero=_first_text(root, "Numero"),
        codigo_verificacao=_first_text(root, "CodigoVerificacao"),
        competencia=competencia[:10] if competencia else None,
        data_emissao=data_emissao[:10] if data_emissao else None,
        valor_servicos=float(valor.replace(",", ".")) if valor else None,
        prestador_cnpj=_first_under(root, "Prestador", ("Cnpj", "Cpf"))
        or _first_under(root, "PrestadorServico", ("Cnpj", "Cpf")),
        tomador_documento=_first_under(root, "Tomador", ("Cnpj", "Cpf"))
        or _first_under(root, "TomadorServico", ("Cnpj", "Cpf")),
    )


# =============================================================================
# SINKS
# =============================================================================

class JsonlIngestionSink:
    """Grava registros em JSONL, ignorando checksums já gravados."""

    def __init__(self, output_path: str):
        self.output_path = Path(output_path)
        self._seen: Optional[Set[str]] = None

    async def _load_seen(self) -> Set[str]:
        if self._seen is None:
            self._seen = set()
            if await aiofiles.os.path.exists(self.output_path):
                async with aiofiles.open(self.output_path, "r", encoding="utf-8") as f:
                    async for line in f:
                        line = line.strip()
                        if line:
                            self._seen.add(json.loads(line)["checksum"])
        return self._seen

    async def process_files(self, paths: Sequence[str]) -> IngestResult:
        result = IngestResult(total=len(paths))
        seen = await self._load_seen()
        await aiofiles.os.makedirs(self.output_path.parent, exist_ok=True)

        async with aiofiles.open(self.output_path, "a", encoding="utf-8") as f:
            for path in paths:
                try:
                    record = await parse_nfse_file(path)
                except (ET.ParseError, OSError, ValueError) as e:
                    logger.warning(f"[INGEST] Erro ao processar {path}: {e}")
                    result.errors += 1
                    result.failures.append({"path": str(path), "error": str(e)})
                    continue

                if record.checksum in seen:
                    result.duplicates += 1
                else:
                    await f.write(json.dumps(asdict(record), ensure_ascii=False) + "\n")
                    seen.add(record.checksum)
                result.success += 1

        logger.info(
            f"[INGEST] {result.success}/{result.total} XMLs ingeridos "
            f"({result.duplicates} já existentes) em {self.output_path}"
        )
        return result


class SupabaseIngestionSink:
    """Upsert na tabela nfse do Supabase (conflito por checksum)."""

    TABLE = "nfse"

    def __init__(self, url: str, key: str, client: Optional[Client] = None):
        self.client: Client = client or create_client(url, key)
        logger.info("Supabase conectado: %s", url)

    async def process_files(self, paths: Sequence[str]) -> IngestResult:
        result = IngestResult(total=len(paths))
        for path in paths:
            try:
                record = await parse_nfse_file(path)
                await asyncio.to_thread(self._upsert, asdict(record))
                result.success += 1
            except (ET.ParseError, OSError, ValueError) as e:
                logger.warning(f"[INGEST] Erro ao processar {path}: {e}")
                result.errors += 1
                result.failures.append({"path": str(path), "error": str(e)})
            except Exception as e:
                logger.error(f"[INGEST] Erro ao gravar {path} no Supabase: {e}")
                result.errors += 1
                result.failures.append({"path": str(path), "error": str(e)})
        return result

    def _upsert(self, data: dict) -> None:
        self.client.table(self.TABLE).upsert(data, on_conflict="checksum").execute()


def build_ingestion_sink(cfg: Config) -> IngestionSink:
    """Supabase quando as credenciais existem, senão JSONL local."""
    if cfg.supabase_enabled:
        return SupabaseIngestionSink(cfg.supabase_url, cfg.supabase_key)
    logger.info(f"Supabase não configurado, ingestão em JSONL: {cfg.INGEST_JSONL_PATH}")
    return JsonlIngestionSink(cfg.INGEST_JSONL_PATH)
