"""
Motor de Deduplicação e Reorganização.

Responsável por:
1. Decidir se um XML recém-baixado é novo ou duplicata (cadeia de políticas)
2. Descobrir a competência real do documento a partir do próprio XML
3. Mover o arquivo para downloadRoot/<ano>/<mês>/<cnpj>/ sem sobrescrever
4. Verificação pré-download (antes de gastar ações no navegador)

Ordem das políticas (a primeira que encontrar duplicata vence):
    file_exists -> name_duplicate -> content_duplicate -> hash_duplicate
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import aiofiles
import aiofiles.os

from .cache import MISSING, DuplicateCache
from .config import Config
from .periods import Period

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class SkipReason(str, Enum):
    """Motivos para não manter (ou não baixar) um XML."""
    FILE_EXISTS = "file_exists"
    NAME_DUPLICATE = "name_duplicate"
    CONTENT_DUPLICATE = "content_duplicate"
    HASH_DUPLICATE = "hash_duplicate"
    MAX_FILES_REACHED = "max_files_reached"
    NOTE_EXISTS = "note_exists"


# =============================================================================
# EXTRAÇÃO DO XML
# =============================================================================

_NUMERO_RE = re.compile(r"<(?:\w+:)?Numero>(\d+)</(?:\w+:)?Numero>")
_CODIGO_RE = re.compile(r"<(?:\w+:)?CodigoVerificacao>([A-Za-z0-9]+)")

# Ordem de preferência para a competência real
_COMPETENCIA_PATTERNS = (
    re.compile(r"<(?:\w+:)?Competencia>(\d{4}-\d{2}-\d{2})", re.IGNORECASE),
    re.compile(r"<(?:\w+:)?DataEmissao>(\d{4}-\d{2}-\d{2})", re.IGNORECASE),
    re.compile(r"<(?:\w+:)?DataEmissaoRps>(\d{4}-\d{2}-\d{2})", re.IGNORECASE),
    re.compile(r"(\d{4}-\d{2}-\d{2})"),
)


@dataclass(frozen=True)
class XMLData:
    """Campos que identificam uma NFSe de forma substantiva."""
    numero: Optional[str] = None
    codigo_verificacao: Optional[str] = None

    @property
    def key(self) -> Optional[Tuple[str, str]]:
        if self.numero and self.codigo_verificacao:
            return (self.numero, self.codigo_verificacao.lower())
        return None


async def read_xml_text(path: PathLike) -> str:
    async with aiofiles.open(path, "r", encoding="utf-8", errors="ignore") as f:
        return await f.read()


async def read_bytes(path: PathLike) -> bytes:
    async with aiofiles.open(path, "rb") as f:
        return await f.read()


async def remove_file(path: PathLike) -> None:
    """Remove o arquivo; ausente não é erro."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


def parse_xml_data(content: str) -> XMLData:
    numero = _NUMERO_RE.search(content)
    codigo = _CODIGO_RE.search(content)
    return XMLData(
        numero=numero.group(1) if numero else None,
        codigo_verificacao=codigo.group(1) if codigo else None,
    )


def parse_competencia(content: str) -> Optional[Tuple[int, int]]:
    """Retorna (ano, mês) da primeira data válida encontrada, ou None."""
    for pattern in _COMPETENCIA_PATTERNS:
        for match in pattern.finditer(content):
            try:
                found = datetime.strptime(match.group(1), "%Y-%m-%d")
            except ValueError:
                continue
            return found.year, found.month
    return None


# =============================================================================
# RESULTADOS
# =============================================================================

@dataclass
class OrganizeResult:
    """Resultado de organize()."""
    organized: bool
    file_name: str
    target_path: Optional[str] = None
    reason: Optional[SkipReason] = None
    duplicate_of: Optional[str] = None
    competencia: Optional[str] = None
    retargeted: bool = False

    @property
    def skipped(self) -> bool:
        return not self.organized

    def to_dict(self) -> dict:
        data = {
            "organized": self.organized,
            "fileName": self.file_name,
            "targetPath": self.target_path,
            "competencia": self.competencia,
            "retargeted": self.retargeted,
        }
        if self.skipped:
            data["skipped"] = True
            data["reason"] = self.reason.value if self.reason else None
            data["duplicateOf"] = self.duplicate_of
        return data


@dataclass
class PrecheckResult:
    """Resultado da verificação pré-download."""
    should_skip: bool
    reason: Optional[SkipReason] = None
    note_number: Optional[str] = None
    existing_count: int = 0


# =============================================================================
# POLÍTICAS
# =============================================================================

@dataclass
class DedupContext:
    """Dados compartilhados pelas políticas durante uma verificação."""
    engine: "DeduplicationEngine"
    artifact: Path
    target_dir: Path
    existing: List[str] = field(default_factory=list)

    @property
    def file_name(self) -> str:
        return self.artifact.name


class DuplicatePolicy:
    """Uma estratégia de detecção. Retorna o nome do arquivo duplicado ou None."""

    reason: SkipReason

    async def check(self, ctx: DedupContext) -> Optional[str]:
        raise NotImplementedError


class FileExistsPolicy(DuplicatePolicy):
    reason = SkipReason.FILE_EXISTS

    async def check(self, ctx: DedupContext) -> Optional[str]:
        target = ctx.target_dir / ctx.file_name
        try:
            if await aiofiles.os.path.isfile(target) and await aiofiles.os.path.getsize(target) > 0:
                return ctx.file_name
        except OSError:
            # Removido entre as duas consultas
            return None
        return None


class NameDuplicatePolicy(DuplicatePolicy):
    """Mesmo nome entre os arquivos listados (listagem em cache)."""
    reason = SkipReason.NAME_DUPLICATE

    async def check(self, ctx: DedupContext) -> Optional[str]:
        return ctx.file_name if ctx.file_name in ctx.existing else None


class ContentDuplicatePolicy(DuplicatePolicy):
    """Mesmo par (Numero, CodigoVerificacao). Verificação autoritativa."""
    reason = SkipReason.CONTENT_DUPLICATE

    async def check(self, ctx: DedupContext) -> Optional[str]:
        key = (await ctx.engine.extract_xml_data(ctx.artifact)).key
        if key is None:
            return None
        for name in ctx.existing:
            if (await ctx.engine.extract_xml_data(ctx.target_dir / name)).key == key:
                return name
        return None


class HashDuplicatePolicy(DuplicatePolicy):
    """
    Fallback por MD5 quando os campos estruturados não existem.

    Arquivo ilegível (inclusive removido depois da listagem) não casa com nada.
    """
    reason = SkipReason.HASH_DUPLICATE

    async def check(self, ctx: DedupContext) -> Optional[str]:
        artifact_hash = await ctx.engine.file_hash(ctx.artifact)
        if artifact_hash is None:
            return None
        for name in ctx.existing:
            if await ctx.engine.file_hash(ctx.target_dir / name) == artifact_hash:
                return name
        return None


DEFAULT_POLICIES: Tuple[DuplicatePolicy, ...] = (
    FileExistsPolicy(),
    NameDuplicatePolicy(),
    ContentDuplicatePolicy(),
    HashDuplicatePolicy(),
)


# =============================================================================
# MOTOR
# =============================================================================

class DeduplicationEngine:
    """
    Decide, para cada artefato baixado, se ele é novo ou duplicata, e o
    coloca no bucket da sua competência real.

    Não guarda estado além do DuplicateCache compartilhado.
    """

    def __init__(
        self,
        cfg: Config,
        cache: Optional[DuplicateCache] = None,
        policies: Optional[Sequence[DuplicatePolicy]] = None,
    ):
        self.config = cfg
        self.cache = cache or DuplicateCache(cfg)
        self.policies: Tuple[DuplicatePolicy, ...] = tuple(policies or DEFAULT_POLICIES)

    # ----- paths -----

    def bucket_dir(self, cnpj: str, year: int, month: int) -> Path:
        return self.config.download_root / f"{year:04d}" / f"{month:02d}" / cnpj

    async def list_bucket_files(self, directory: PathLike) -> List[str]:
        """Lista os XMLs de um bucket, ignorando temporários e ocultos."""
        key = str(Path(directory))
        cached = self.cache.files.get(key, MISSING)
        if cached is not MISSING:
            return list(cached)

        path = Path(directory)
        if not await aiofiles.os.path.isdir(path):
            files: List[str] = []
        else:
            try:
                names = await aiofiles.os.listdir(path)
                files = sorted([
                    name for name in names
                    if name.lower().endswith(".xml")
                    and not name.endswith(".crdownload")
                    and not name.startswith(".")
                    and await aiofiles.os.path.isfile(path / name)
                ])
            except OSError as e:
                logger.error(f"[DEDUP] Erro ao listar {path}: {e}")
                return []

        self.cache.files.set(key, files)
        return list(files)

    async def bucket_stats(self, directory: PathLike) -> Dict[str, object]:
        files = await self.list_bucket_files(directory)
        total_size = 0
        for name in files:
            try:
                total_size += await aiofiles.os.path.getsize(Path(directory) / name)
            except OSError:
                continue
        return {
            "path": str(directory),
            "file_count": len(files),
            "total_size": total_size,
            "files": files,
        }

    # ----- extração (com cache) -----

    async def extract_xml_data(self, path: PathLike) -> XMLData:
        key = str(Path(path))
        cached = self.cache.xml_data.get(key, MISSING)
        if cached is not MISSING:
            return cached
        try:
            data = parse_xml_data(await read_xml_text(path))
        except OSError as e:
            logger.warning(f"[DEDUP] Não foi possível ler {path}: {e}")
            data = XMLData()
        self.cache.xml_data.set(key, data)
        return data

    async def file_hash(self, path: PathLike) -> Optional[str]:
        """MD5 do arquivo, ou None se ele não puder ser lido (não vai para o cache)."""
        key = str(Path(path))
        cached = self.cache.hashes.get(key, MISSING)
        if cached is not MISSING:
            return cached
        try:
            digest = hashlib.md5(await read_bytes(path)).hexdigest()
        except OSError as e:
            logger.warning(f"[DEDUP] Não foi possível calcular o hash de {path}: {e}")
            return None
        self.cache.hashes.set(key, digest)
        return digest

    async def extract_competencia(self, path: PathLike) -> Optional[Tuple[int, int]]:
        try:
            return parse_competencia(await read_xml_text(path))
        except OSError as e:
            logger.warning(f"[DEDUP] Erro ao extrair competência de {path}: {e}")
            return None

    # ----- verificação -----

    async def find_duplicate(
        self, artifact: PathLike, target_dir: PathLike
    ) -> Optional[Tuple[SkipReason, str]]:
        """
        Aplica a cadeia de políticas.

        O veredicto de cada política fica em cache por (artefato, destino,
        política): dentro do TTL, a mesma pergunta recebe a mesma resposta,
        mesmo que os arquivos tenham mudado.
        """
        ctx = DedupContext(
            engine=self,
            artifact=Path(artifact),
            target_dir=Path(target_dir),
        )
        listed = False

        for policy in self.policies:
            kind = policy.reason.value
            verdict = self.cache.get_verdict(kind, ctx.artifact, ctx.target_dir)
            if verdict is MISSING:
                if not listed:
                    ctx.existing = await self.list_bucket_files(ctx.target_dir)
                    listed = True
                verdict = await policy.check(ctx)
                self.cache.set_verdict(kind, ctx.artifact, ctx.target_dir, verdict)
            if verdict is not None:
                return policy.reason, verdict
        return None

    async def should_skip_download(
        self, directory: PathLike, note_number: Optional[str]
    ) -> PrecheckResult:
        """
        Verificação pré-download a partir do número da nota exibido na linha.

        Pula se o bucket já tem MAX_FILES_PER_BUCKET arquivos ou se algum
        nome de arquivo contém o número da nota.
        """
        existing = await self.list_bucket_files(directory)
        limit = self.config.MAX_FILES_PER_BUCKET

        if limit > 0 and len(existing) >= limit:
            return PrecheckResult(
                should_skip=True,
                reason=SkipReason.MAX_FILES_REACHED,
                note_number=note_number,
                existing_count=len(existing),
            )

        if note_number and any(note_number in name for name in existing):
            return PrecheckResult(
                should_skip=True,
                reason=SkipReason.NOTE_EXISTS,
                note_number=note_number,
                existing_count=len(existing),
            )

        return PrecheckResult(should_skip=False, note_number=note_number, existing_count=len(existing))

    # ----- organização -----

    async def organize(self, artifact_path: PathLike, cnpj: str, nominal: Period) -> OrganizeResult:
        """
        Organiza um artefato baixado.

        Ao final, o arquivo de staging foi movido ou removido. Em erro de
        sistema de arquivos, o temporário é descartado, a listagem do bucket
        é invalidada e o erro propaga para o chamador.

        Args:
            artifact_path: Arquivo recém-baixado na pasta de staging
            cnpj: Identidade do bucket
            nominal: Período da busca que encontrou o documento

        Returns:
            OrganizeResult
        """
        artifact = Path(artifact_path)
        file_name = artifact.name

        year, month = nominal.year, nominal.month
        real = await self.extract_competencia(artifact)
        retargeted = False
        if real and real != (year, month):
            logger.info(
                f"[DEDUP] {file_name}: competência real {real[0]:04d}-{real[1]:02d} "
                f"difere da nominal {nominal.label}"
            )
            year, month = real
            retargeted = True

        target_dir = self.bucket_dir(cnpj, year, month)
        competencia = f"{year:04d}-{month:02d}"

        try:
            duplicate = await self.find_duplicate(artifact, target_dir)
            if duplicate:
                reason, duplicate_of = duplicate
                await remove_file(artifact)
                logger.info(
                    f"[DEDUP] Duplicata ({reason.value}) de {duplicate_of}, "
                    f"removendo temporário {file_name}"
                )
                return OrganizeResult(
                    organized=False,
                    file_name=file_name,
                    target_path=str(target_dir / duplicate_of),
                    reason=reason,
                    duplicate_of=duplicate_of,
                    competencia=competencia,
                    retargeted=retargeted,
                )

            return await self._move(artifact, target_dir, competencia, retargeted)
        except OSError as e:
            logger.error(f"[DEDUP] Erro ao organizar {file_name} em {target_dir}: {e}")
            self.cache.invalidate_dir(target_dir)
            await self._discard(artifact)
            raise
        finally:
            self._forget_artifact(artifact)

    async def _discard(self, artifact: Path) -> None:
        try:
            await remove_file(artifact)
        except OSError as e:
            logger.error(f"[DEDUP] Não foi possível remover o temporário {artifact}: {e}")
        else:
            logger.warning(f"[DEDUP] Temporário {artifact.name} descartado após erro")

    async def _move(
        self, artifact: Path, target_dir: Path, competencia: str, retargeted: bool
    ) -> OrganizeResult:
        """Move sem sobrescrever. Se o destino surgiu nesse meio tempo, compara bytes."""
        await aiofiles.os.makedirs(target_dir, exist_ok=True)
        target = target_dir / artifact.name

        if await aiofiles.os.path.exists(target):
            if await aiofiles.os.path.getsize(target) == 0:
                logger.warning(f"[DEDUP] Substituindo arquivo vazio {target}")
                await aiofiles.os.remove(target)
            elif await read_bytes(target) == await read_bytes(artifact):
                await remove_file(artifact)
                self.cache.invalidate_dir(target_dir)
                return OrganizeResult(
                    organized=False,
                    file_name=artifact.name,
                    target_path=str(target),
                    reason=SkipReason.FILE_EXISTS,
                    duplicate_of=target.name,
                    competencia=competencia,
                    retargeted=retargeted,
                )
            else:
                target = await self._unique_target(target)

        await asyncio.to_thread(shutil.move, str(artifact), str(target))
        self.cache.invalidate_dir(target_dir)
        logger.info(f"[DEDUP] Arquivo organizado: {target}")
        return OrganizeResult(
            organized=True,
            file_name=target.name,
            target_path=str(target),
            competencia=competencia,
            retargeted=retargeted,
        )

    @staticmethod
    async def _unique_target(target: Path) -> Path:
        counter = 1
        while True:
            candidate = target.with_name(f"{target.stem}_{counter}{target.suffix}")
            if not await aiofiles.os.path.exists(candidate):
                return candidate
            counter += 1

    def _forget_artifact(self, artifact: Path) -> None:
        """O caminho de staging pode ser reutilizado pelo próximo download."""
        self.cache.invalidate_file(artifact)
        marker = f"-{artifact}-"
        self.cache.verdicts.delete_where(lambda key: marker in str(key))
