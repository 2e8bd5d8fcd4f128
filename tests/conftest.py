from __future__ import annotations

from monitor_guard.main import configure_structlog

# Route library logs through stdlib logging so pytest captures them and stdout stays clean.
configure_structlog()
