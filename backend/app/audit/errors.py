class AuditError(Exception):
    """Base class for failures inside the audit engine."""


class AuditWriteError(AuditError):
    def __init__(self, entity_type, entity_id, action, cause=None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.action = action
        self.cause = cause
        super().__init__(f'Failed to write {action} audit record for {entity_type}#{entity_id}: {cause}')


class ImmutableAuditRecordError(AuditError):
    """Raised when something tries to update or delete a persisted audit record."""
