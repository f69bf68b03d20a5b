import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class PlanWindow:
    def __init__(self, preset_days: tuple[int, ...], max_days: int, default_days: int) -> None:
        self.preset_days = preset_days
        self.max_days = max_days
        self.default_days = default_days


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        default_user_id: int,
        app_url: str,
        stripe_secret_key: Optional[str],
        stripe_webhook_secret: Optional[str],
        stripe_price_monthly_live: Optional[str],
        stripe_price_monthly_test: Optional[str],
        grace_days: int,
        plans: dict[str, PlanWindow],
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.default_user_id = default_user_id
        self.app_url = app_url
        self.stripe_secret_key = stripe_secret_key
        self.stripe_webhook_secret = stripe_webhook_secret
        self.stripe_price_monthly_live = stripe_price_monthly_live
        self.stripe_price_monthly_test = stripe_price_monthly_test
        self.grace_days = grace_days
        self.plans = plans


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FLOWTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_days(raw: str) -> tuple[int, ...]:
    values = sorted({int(part) for part in raw.split(",") if part.strip()})
    if not values or values[0] <= 0:
        raise ValueError(f"Invalid preset day list: {raw!r}")
    return tuple(values)


def default_plans() -> dict[str, PlanWindow]:
    return {
        "free": PlanWindow(preset_days=(7, 14, 30), max_days=30, default_days=30),
        "pro": PlanWindow(
            preset_days=(7, 14, 30, 60, 90, 120), max_days=120, default_days=90
        ),
    }


def _plans_from_env() -> dict[str, PlanWindow]:
    free_days = _parse_days(os.getenv("FLOWTRACK_FREE_PRESET_DAYS", "7,14,30"))
    pro_days = _parse_days(
        os.getenv("FLOWTRACK_PRO_PRESET_DAYS", "7,14,30,60,90,120")
    )
    free_max = int(os.getenv("FLOWTRACK_FREE_MAX_DAYS", str(max(free_days))))
    pro_max = int(os.getenv("FLOWTRACK_PRO_MAX_DAYS", str(max(pro_days))))
    return {
        "free": PlanWindow(
            preset_days=free_days,
            max_days=free_max,
            default_days=30 if 30 in free_days else free_days[-1],
        ),
        "pro": PlanWindow(
            preset_days=pro_days,
            max_days=pro_max,
            default_days=90 if 90 in pro_days else pro_days[-1],
        ),
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "flowtrack.db"
    database_url = os.getenv("FLOWTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FLOWTRACK_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "FLOWTRACK_CSRF_SECRET",
        "4f7d0c2b9a1e8f36d5c4b3a29181706f5e4d3c2b1a09f8e7d6c5b4a392817065",
    )
    default_user_id = int(os.getenv("FLOWTRACK_DEFAULT_USER_ID", "1"))
    app_url = os.getenv("FLOWTRACK_APP_URL", "http://localhost:8000").rstrip("/")
    grace_days = int(os.getenv("FLOWTRACK_GRACE_DAYS", "3"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        default_user_id=default_user_id,
        app_url=app_url,
        stripe_secret_key=os.getenv("FLOWTRACK_STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.getenv("FLOWTRACK_STRIPE_WEBHOOK_SECRET") or None,
        stripe_price_monthly_live=os.getenv("FLOWTRACK_STRIPE_PRICE_MONTHLY_LIVE")
        or None,
        stripe_price_monthly_test=os.getenv("FLOWTRACK_STRIPE_PRICE_MONTHLY_TEST")
        or None,
        grace_days=grace_days,
        plans=_plans_from_env(),
    )
