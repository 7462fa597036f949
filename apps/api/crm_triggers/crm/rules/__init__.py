from __future__ import annotations

from functools import lru_cache

from crm_triggers.crm.models import CRMAccount, CRMContact, CRMOpportunity
from crm_triggers.crm.rules import account, contact, opportunity
from crm_triggers.triggers.dispatcher import TriggerRegistry


def build_registry() -> TriggerRegistry:
    registry = TriggerRegistry()
    registry.add(CRMAccount, account.dispatcher)
    registry.add(CRMContact, contact.dispatcher)
    registry.add(CRMOpportunity, opportunity.dispatcher)
    return registry


@lru_cache
def get_registry() -> TriggerRegistry:
    return build_registry()
