"""Validação dos parâmetros de uma execução (pydantic v2)."""

import re
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    ValidationError,
    field_validator,
    model_validator,
)

from .config import Config
from .errors import InvalidParametersError

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ExecutionParams(BaseModel):
    """Parâmetros aceitos por start_execution (snake_case ou camelCase)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cnpj: str
    password: str = Field(repr=False)
    start_date: str = Field(validation_alias=AliasChoices("start_date", "startDate"))
    end_date: str = Field(validation_alias=AliasChoices("end_date", "endDate"))
    headless: Optional[StrictBool] = None
    max_retries: Optional[int] = Field(
        default=None, ge=1, le=10,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
    )
    download_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("download_path", "downloadPath"),
    )

    @field_validator("cnpj")
    @classmethod
    def _cnpj_digits(cls, value: str) -> str:
        digits = re.sub(r"\D", "", value or "")
        if len(digits) not in (11, 14):
            raise ValueError("CNPJ/CPF deve ter 11 ou 14 dígitos")
        return digits

    @field_validator("password")
    @classmethod
    def _password_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Senha é obrigatória")
        return value

    @field_validator("start_date", "end_date")
    @classmethod
    def _iso_date(cls, value: str) -> str:
        if not _DATE_RE.match(value or ""):
            raise ValueError("Data deve estar no formato YYYY-MM-DD")
        date.fromisoformat(value)
        return value

    @model_validator(mode="after")
    def _ordered_range(self) -> "ExecutionParams":
        if date.fromisoformat(self.start_date) > date.fromisoformat(self.end_date):
            raise ValueError("Data inicial deve ser menor ou igual à data final")
        return self

    def config_overrides(self) -> Dict[str, Any]:
        """Campos do Config substituídos por esta execução."""
        return {
            "USERNAME": self.cnpj,
            "PASSWORD": self.password,
            "START_DATE": self.start_date,
            "END_DATE": self.end_date,
            "HEADLESS": self.headless,
            "MAX_RETRIES": self.max_retries,
            "DOWNLOAD_PATH": self.download_path,
        }

    def sanitized(self) -> Dict[str, Any]:
        """Parâmetros seguros para exibição: CNPJ mascarado e sem senha."""
        data = {
            "cnpj": Config.mask_cnpj(self.cnpj),
            "start_date": self.start_date,
            "end_date": self.end_date,
            "headless": self.headless,
            "max_retries": self.max_retries,
            "download_path": self.download_path,
        }
        return {k: v for k, v in data.items() if v is not None}


def _format_errors(exc: ValidationError) -> List[Dict[str, str]]:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "params"
        errors.append({"field": location, "message": error.get("msg", "")})
    return errors


def validate_params(data: Any) -> ExecutionParams:
    """
    Valida os parâmetros brutos de uma execução.

    Raises:
        InvalidParametersError: com a lista de erros por campo
    """
    if isinstance(data, ExecutionParams):
        return data
    try:
        return ExecutionParams.model_validate(data or {})
    except ValidationError as e:
        errors = _format_errors(e)
        summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
        raise InvalidParametersError(f"Parâmetros inválidos: {summary}", errors=errors) from e
