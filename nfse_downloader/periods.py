"""
Divisão do intervalo de busca em períodos mensais (competências).

O primeiro período começa na data inicial do usuário, o último termina na
data final, e os intermediários cobrem meses completos. Nenhum dia é
processado duas vezes e nenhum é pulado.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Union

DateLike = Union[date, str]


@dataclass(frozen=True)
class Period:
    """Sub-intervalo alinhado a um mês do calendário."""
    year: int
    month: int
    start_date: date
    end_date: date

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start_iso(self) -> str:
        return self.start_date.isoformat()

    @property
    def end_iso(self) -> str:
        return self.end_date.isoformat()

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1

    @classmethod
    def for_month(cls, year: int, month: int) -> "Period":
        """Período cobrindo o mês inteiro."""
        last_day = calendar.monthrange(year, month)[1]
        return cls(year, month, date(year, month, 1), date(year, month, last_day))


def parse_date(value: DateLike) -> date:
    """Aceita date ou string YYYY-MM-DD."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value, "%Y-%m-%d").date()


def split_into_periods(start: DateLike, end: DateLike) -> List[Period]:
    """
    Divide [start, end] em períodos mensais.

    Args:
        start: Data inicial (inclusive)
        end: Data final (inclusive)

    Returns:
        Lista ordenada de Period, contígua e sem sobreposição

    Raises:
        ValueError: Se start > end
    """
    start_date = parse_date(start)
    end_date = parse_date(end)
    if start_date > end_date:
        raise ValueError(f"Data inicial {start_date} posterior à data final {end_date}")

    periods: List[Period] = []
    year, month = start_date.year, start_date.month
    while (year, month) <= (end_date.year, end_date.month):
        month_period = Period.for_month(year, month)
        periods.append(Period(
            year=year,
            month=month,
            start_date=max(start_date, month_period.start_date),
            end_date=min(end_date, month_period.end_date),
        ))
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
    return periods
