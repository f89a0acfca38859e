import os

AUDIT_DEFAULTS = {
    'AUDIT_ENABLED': True,
    'AUDIT_INDEPENDENT_TRANSACTION': True,
    'AUDIT_STATE_CACHE_TTL_SECONDS': 900,
    'AUDIT_STATE_CACHE_MAX_ENTRIES': 10000,
    'AUDIT_CORRELATION_EXCLUDE_PREFIXES': ('/iam/auth/',),
    'AUDIT_GROUP_WINDOW_SECONDS': 3,
    'AUDIT_EXPORT_MAX_RECORDS': 10000,
}


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def load_audit_settings(environ=None):
    """AUDIT_* settings from the environment, falling back to AUDIT_DEFAULTS."""
    environ = os.environ if environ is None else environ
    settings = dict(AUDIT_DEFAULTS)
    for key, default in AUDIT_DEFAULTS.items():
        raw = environ.get(key)
        if raw is None or raw == '':
            continue
        if isinstance(default, bool):
            settings[key] = _as_bool(raw)
        elif isinstance(default, int):
            try:
                settings[key] = int(raw)
            except ValueError:
                raise ValueError(f'{key} must be int')
        elif isinstance(default, tuple):
            settings[key] = tuple(p.strip() for p in raw.split(',') if p.strip())
        else:
            settings[key] = raw
    return settings
