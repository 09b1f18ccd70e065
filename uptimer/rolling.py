from __future__ import annotations

from collections import OrderedDict
from typing import Generic, Hashable, Iterator, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class RollingWindow(Generic[K, V]):
	"""Упорядоченный по вставке словарь фиксированной ёмкости.

	Повторный push существующего ключа переносит его в конец; при заполнении
	новый ключ вытесняет самый старый.
	"""

	def __init__(self, capacity: int) -> None:
		if not isinstance(capacity, int) or capacity < 1:
			raise ValueError("capacity должен быть целым числом >= 1")
		self._capacity = capacity
		self._items: OrderedDict[K, V] = OrderedDict()

	@property
	def capacity(self) -> int:
		return self._capacity

	def push(self, key: K, value: V) -> None:
		if key in self._items:
			self._items.move_to_end(key)
		elif len(self._items) >= self._capacity:
			self._items.popitem(last=False)
		self._items[key] = value

	def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
		return self._items.get(key, default)

	def has(self, key: K) -> bool:
		return key in self._items

	def keys(self) -> list[K]:
		return list(self._items.keys())

	def __contains__(self, key: object) -> bool:
		return key in self._items

	def __len__(self) -> int:
		return len(self._items)

	def __iter__(self) -> Iterator[tuple[K, V]]:
		return iter(list(self._items.items()))
