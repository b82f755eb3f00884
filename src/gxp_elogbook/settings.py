"""Service settings for the eLogbook ledger.

All settings use the GXP_ELOGBOOK_ environment prefix and cover:
- Record Store backend and database connection
- Export window caps
- Logging
- First-run administrator bootstrap
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the eLogbook ledger service.

    Environment variable prefix: GXP_ELOGBOOK_
    """

    service_name: str = "gxp-elogbook-ledger"

    # -------------------------------------------------------------------------
    # Record Store
    # -------------------------------------------------------------------------

    store_backend: Literal["sql", "memory"] = Field(
        default="sql",
        description="Record Store backend. 'memory' is not durable and is meant for tests and demos.",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./elogbook.db",
        description="SQLAlchemy async URL for the SQL Record Store. "
        "Templates, entries, users and the audit ledger share one database so "
        "entity writes and audit appends commit in a single transaction.",
    )
    db_echo: bool = Field(
        default=False,
        description="Echo SQL statements. Keep disabled outside local debugging: "
        "statements carry regulated snapshots.",
    )

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    export_max_span_days: int = Field(
        default=31,
        ge=1,
        description="Hard cap on the span of an export date window, in days.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_format: Literal["json", "console"] = Field(default="json", description="Log renderer.")

    # -------------------------------------------------------------------------
    # Bootstrap
    # -------------------------------------------------------------------------

    bootstrap_admin_username: str = Field(
        default="admin",
        description="Username of the administrator created when the user store is empty.",
    )
    bootstrap_admin_full_name: str = Field(
        default="System Administrator",
        description="Display name of the bootstrap administrator.",
    )

    model_config = SettingsConfigDict(env_prefix="GXP_ELOGBOOK_")
