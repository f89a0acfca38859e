from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Boolean, DateTime, text
from typing import Optional

from .authz import Base
from app.audit.contract import Auditable


class Customer(Auditable, Base):
    __tablename__ = 'customers'
    __audit_sensitive__ = frozenset({'pin_hash'})

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    address: Mapped[Optional[str]] = mapped_column(String(255))
    # positive balance means the customer owes the store
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pin_hash: Mapped[Optional[str]] = mapped_column(String(255))
    pin_set_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    portal_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[Optional[str]] = mapped_column(String(1024))
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))

    def set_pin(self, raw: str):
        from werkzeug.security import generate_password_hash
        self.pin_hash = generate_password_hash(raw)
        self.pin_set_at = datetime.now(timezone.utc)
        self.portal_enabled = True

    def verify_pin(self, raw: str) -> bool:
        from werkzeug.security import check_password_hash
        return bool(self.pin_hash) and check_password_hash(self.pin_hash, raw)
