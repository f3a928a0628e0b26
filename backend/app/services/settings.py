"""Configuración persistente editable desde el panel (tabla ``admin_settings``)."""
from ..extensions import db
from ..models import AdminSetting


def get_setting(key, default=None):
    setting = db.session.get(AdminSetting, key)
    if setting is None or setting.value is None:
        return default
    return setting.value


def set_setting(key, value, *, updated_by=None):
    setting = db.session.get(AdminSetting, key)
    if setting is None:
        setting = AdminSetting(key=key)
        db.session.add(setting)
    setting.value = value
    setting.updated_by = updated_by
    db.session.flush([setting])
    return setting
