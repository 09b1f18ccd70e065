import os
import tempfile
from pathlib import Path

# окружение должно быть готово до первого импорта uptimer.db.models
_DB_DIR = tempfile.mkdtemp(prefix="uptimer-test-")
os.environ["DB_URL"] = f"sqlite:///{Path(_DB_DIR) / 'uptimer.db'}"
os.environ["SCHEDULER_ENABLE"] = "false"
for _name in ("API_KEY", "CRON_SECRET", "WEBHOOK_URL", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID"):
    os.environ.pop(_name, None)

import pytest

from uptimer.db.models import Base, engine


@pytest.fixture(autouse=True)
def database():
    """Чистая схема для каждого теста."""
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)
