"""Allow ``python -m service_watcher``."""

from .main import app

app()
