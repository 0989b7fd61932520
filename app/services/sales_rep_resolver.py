import logging

from app.schemas.call_intake import ResolutionResult, ResolvedBy
from app.services.user_store import UserStore, normalize_email

logger = logging.getLogger(__name__)


class SalesRepResolutionError(Exception):
    pass


class SalesRepResolver:
    """Credits a webhook's call to the rep who hosted it.

    Integrations are often connected by a manager account, so the owner in the
    webhook URL is only used when the host email does not belong to an active
    user of the same organization.
    """

    def __init__(self, user_store: UserStore) -> None:
        self.user_store = user_store

    def resolve_sales_rep(
        self,
        *,
        organization_id: str,
        email: str | None,
        fallback_user_id: str,
    ) -> ResolutionResult:
        normalized_email = normalize_email(email)
        if normalized_email:
            user = self.user_store.find_user_by_email(organization_id, normalized_email)
            if user:
                return ResolutionResult(user=user, resolved_by=ResolvedBy.exact_email_match)
            logger.info(
                "No active user for host email organization_id=%s email=%s; using integration owner",
                organization_id,
                normalized_email,
            )

        fallback_user = self.user_store.find_user_by_id(fallback_user_id)
        if not fallback_user:
            raise SalesRepResolutionError(f"Integration owner {fallback_user_id} could not be loaded.")
        return ResolutionResult(user=fallback_user, resolved_by=ResolvedBy.webhook_owner_fallback)
