"""Configuration endpoint."""

from typing import Any

from fastapi import APIRouter
from sqlalchemy.engine import make_url

from stagecache.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Return the effective settings with credentials masked.

    Returns:
        Settings as JSON, plus the layer and mount cache directories.
    """
    settings = get_settings()
    data = settings.model_dump(mode="json")
    data["db_url"] = make_url(settings.db_url).render_as_string(hide_password=True)
    data["layers_dir"] = str(settings.cache_dir / "layers")
    data["mounts_dir"] = str(settings.cache_dir / "mounts")
    return data
