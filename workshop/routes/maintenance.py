from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..db import get_db
from ..models.models import MaintenanceSettings, User
from ..schemas.maintenance import MaintenanceSettingsUpdate
from ..services import audit, system_log

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


def get_or_create_settings(db: Session) -> MaintenanceSettings:
    row = db.query(MaintenanceSettings).filter(MaintenanceSettings.id == 1).first()
    if row is None:
        row = MaintenanceSettings(id=1, is_under_maintenance=False)
        db.add(row)
        db.commit()
        db.refresh(row)
    return row


def _mask(api_key):
    if not api_key:
        return None
    return f"{'*' * max(0, len(api_key) - 4)}{api_key[-4:]}"


def _settings_to_dict(row: MaintenanceSettings) -> dict:
    return {
        "is_under_maintenance": bool(row.is_under_maintenance),
        "maintenance_message": row.maintenance_message,
        "api_key": _mask(row.api_key),
        "has_api_key": bool(row.api_key),
        "last_api_key_validation_at": row.last_api_key_validation_at.isoformat() if row.last_api_key_validation_at else None,
        "last_api_key_validation_success": row.last_api_key_validation_success,
        "enabled_by": str(row.enabled_by) if row.enabled_by else None,
        "enabled_at": row.enabled_at.isoformat() if row.enabled_at else None,
        "disabled_by": str(row.disabled_by) if row.disabled_by else None,
        "disabled_at": row.disabled_at.isoformat() if row.disabled_at else None,
    }


@router.get("/settings/public")
def get_public_settings(db: Session = Depends(get_db)):
    """Maintenance state for clients that are not signed in"""
    row = get_or_create_settings(db)
    return {
        "is_under_maintenance": bool(row.is_under_maintenance),
        "maintenance_message": row.maintenance_message,
    }


@router.get("/settings")
def get_settings(db: Session = Depends(get_db), _=Depends(require_roles("administrator"))):
    return _settings_to_dict(get_or_create_settings(db))


@router.put("/settings")
def update_settings(
    payload: MaintenanceSettingsUpdate,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("administrator")),
):
    row = get_or_create_settings(db)
    before = _settings_to_dict(row)
    data = payload.model_dump(exclude_unset=True)
    now = datetime.now(timezone.utc)

    if data.get("is_under_maintenance") is not None and data["is_under_maintenance"] != row.is_under_maintenance:
        row.is_under_maintenance = data["is_under_maintenance"]
        if row.is_under_maintenance:
            row.enabled_by = me.id
            row.enabled_at = now
        else:
            row.disabled_by = me.id
            row.disabled_at = now
    if data.get("maintenance_message"):
        row.maintenance_message = data["maintenance_message"]

    key_changed = "api_key" in data and (data["api_key"] or None) != row.api_key
    if key_changed:
        row.api_key = data["api_key"] or None
        row.last_api_key_validation_at = None
        row.last_api_key_validation_success = None

    db.commit()
    db.refresh(row)

    if key_changed:
        gate = getattr(request.app.state, "api_key_gate", None)
        if gate is not None:
            gate.cache.clear()

    after = _settings_to_dict(row)
    audit.record(db, "update", "MaintenanceSettings", row.id, actor=me, before_state=before, after_state=after, request=request)
    if before["is_under_maintenance"] != after["is_under_maintenance"]:
        state = "enabled" if after["is_under_maintenance"] else "disabled"
        system_log.write(db, "warn", f"Maintenance mode {state}", user=me, method=request.method, path=request.url.path)
    return after
