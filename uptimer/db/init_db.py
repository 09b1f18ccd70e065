from __future__ import annotations

from .models import Base, engine


def main() -> None:
	"""Создать схему, если таблиц ещё нет (для dev и SQLite, в проде схему ведёт alembic)."""
	Base.metadata.create_all(engine)


if __name__ == "__main__":
	main()
