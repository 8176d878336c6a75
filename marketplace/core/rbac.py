"""Typed roles and the authorization policy for campaign money operations.

Roles are resolved once per request into an immutable ``Identity``; every
decision below is a pure function of that identity and the campaign row.
"""

from dataclasses import dataclass, field
from enum import StrEnum

from marketplace.models.campaign import Campaign
from marketplace.models.user import User


class Role(StrEnum):
    ADMIN = "admin"
    ADVERTISER = "advertiser"
    CREATOR = "creator"


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of one request."""

    user: User
    roles: frozenset[Role] = field(default_factory=frozenset)

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def email(self) -> str | None:
        return self.user.email

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles


def is_campaign_party(identity: Identity, campaign: Campaign) -> bool:
    return identity.user_id in (campaign.advertiser_id, campaign.creator_id)


def can_view_campaign(identity: Identity, campaign: Campaign) -> bool:
    return identity.is_admin or is_campaign_party(identity, campaign)


def can_fund_campaign(identity: Identity, campaign: Campaign) -> bool:
    return identity.is_admin or identity.user_id == campaign.advertiser_id


def can_release_escrow(identity: Identity, campaign: Campaign) -> bool:
    return identity.is_admin or identity.user_id == campaign.advertiser_id


def can_review_proof(identity: Identity, campaign: Campaign) -> bool:
    return identity.is_admin or identity.user_id == campaign.advertiser_id


def can_submit_proof(identity: Identity, campaign: Campaign) -> bool:
    return identity.user_id == campaign.creator_id

