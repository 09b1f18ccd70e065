"""Мониторинг доступности HTTP-сервисов со скользящей статистикой."""

__version__ = "0.1.0"
