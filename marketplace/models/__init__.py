from marketplace.models.user import User, UserRole
from marketplace.models.campaign import Campaign
from marketplace.models.transaction import Transaction
from marketplace.models.wallet import CreatorWallet
from marketplace.models.proof import CampaignProof
from marketplace.models.withdrawal import Withdrawal
from marketplace.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "Campaign",
    "Transaction",
    "CreatorWallet",
    "CampaignProof",
    "Withdrawal",
    "AuditLog",
]
