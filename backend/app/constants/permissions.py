"""Central enum-like definitions to avoid typos in permission/service strings.
Extend cautiously; never rename codes silently. Add new ones and deprecate old via migration if needed.
"""
from __future__ import annotations
from typing import List, Dict


SERVICE_ACTIONS = {
    'SALES': ['READ', 'CREATE', 'APPROVE', 'FULFILL', 'COMPLETE', 'CANCEL', 'DELETE'],
    'INV': ['READ', 'ADJUST', 'DELETE'],
    'CUST': ['READ', 'MANAGE', 'DELETE'],
    'AUDIT': ['READ', 'EXPORT'],
    'ADMIN': ['USER.MANAGE', 'ROLE.MANAGE'],
}


def build_all_permission_codes() -> List[str]:
    codes: List[str] = []
    for svc, actions in SERVICE_ACTIONS.items():
        for act in actions:
            codes.append(f"{svc}.{act}")
    return codes

ALL_PERMISSION_CODES = build_all_permission_codes()

ROLE_PRESETS: Dict[str, List[str]] = {
    'Seller': ['SALES.CREATE', 'SALES.READ', 'CUST.READ', 'INV.READ'],
    'Storekeeper': ['INV.READ', 'INV.ADJUST'],
    # Manager: operational authority across domains plus read access to the audit trail
    'Manager': [
        'SALES.READ', 'SALES.CREATE', 'SALES.APPROVE', 'SALES.FULFILL', 'SALES.COMPLETE', 'SALES.CANCEL',
        'INV.READ', 'INV.ADJUST',
        'CUST.READ', 'CUST.MANAGE',
        'AUDIT.READ',
    ],
    'Auditor': ['AUDIT.READ', 'AUDIT.EXPORT'],
    'Owner': ['*']
}
