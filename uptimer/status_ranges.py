from __future__ import annotations

from typing import Iterable, NamedTuple, Optional


class StatusRange(NamedTuple):
	start: int
	end: int

	def __contains__(self, code: object) -> bool:  # type: ignore[override]
		return isinstance(code, int) and self.start <= code <= self.end

	def __str__(self) -> str:
		return str(self.start) if self.start == self.end else f"{self.start}-{self.end}"


DEFAULT_STATUS_RANGES: tuple[StatusRange, ...] = (StatusRange(200, 399),)


def _parse_code(raw: str) -> int:
	try:
		code = int(raw.strip())
	except ValueError:
		raise ValueError(f"invalid status code: {raw!r}") from None
	if not 100 <= code <= 599:
		raise ValueError(f"status code out of range: {code}")
	return code


def parse_status_ranges(value: Optional[str]) -> tuple[StatusRange, ...]:
	"""Разобрать строку вида "200-299,404" в список включающих диапазонов.

	Пустое значение означает диапазон по умолчанию 200-399. Некорректный ввод
	приводит к ValueError, поэтому разбор выполняется при сохранении конфигурации.
	"""
	if value is None or not value.strip():
		return DEFAULT_STATUS_RANGES
	ranges: list[StatusRange] = []
	for part in value.split(","):
		part = part.strip()
		if not part:
			continue
		bounds = part.split("-")
		if len(bounds) == 1:
			code = _parse_code(bounds[0])
			ranges.append(StatusRange(code, code))
		elif len(bounds) == 2:
			start, end = _parse_code(bounds[0]), _parse_code(bounds[1])
			if start > end:
				raise ValueError(f"invalid status range: {part!r}")
			ranges.append(StatusRange(start, end))
		else:
			raise ValueError(f"invalid status range: {part!r}")
	return tuple(ranges) if ranges else DEFAULT_STATUS_RANGES


def format_status_ranges(ranges: Iterable[StatusRange]) -> str:
	return ",".join(str(r) for r in ranges)


def is_status_accepted(code: int, ranges: Iterable[StatusRange]) -> bool:
	return any(code in r for r in ranges)
