"""
Caller identity from Cognito authorizer claims.

REST APIs put the claims under requestContext.authorizer.claims, HTTP APIs with
a JWT authorizer under requestContext.authorizer.jwt.claims. The escrow core
trusts this identity and only checks ownership.
"""
from typing import List, Optional

ADMIN_GROUP = 'admin'


def _claims(event: dict) -> dict:
    try:
        authorizer = event['requestContext']['authorizer']
    except (KeyError, TypeError):
        return {}
    if not isinstance(authorizer, dict):
        return {}
    if isinstance(authorizer.get('claims'), dict):
        return authorizer['claims']
    jwt = authorizer.get('jwt')
    if isinstance(jwt, dict) and isinstance(jwt.get('claims'), dict):
        return jwt['claims']
    return {}


def get_user_sub(event: dict) -> Optional[str]:
    """
    Cognito user sub of the caller.

    Args:
        event: API Gateway Lambda proxy event

    Returns:
        User sub string or None if not authenticated
    """
    return _claims(event).get('sub') or None


def get_user_groups(event: dict) -> List[str]:
    """
    Cognito groups of the caller.

    REST authorizers pass a comma separated string, HTTP API JWT authorizers
    the bracketed form '[admin employer]'.
    """
    groups = _claims(event).get('cognito:groups') or []
    if isinstance(groups, str):
        groups = groups.strip('[]').replace(',', ' ').split()
    return list(groups)


def is_admin(event: dict) -> bool:
    return ADMIN_GROUP in get_user_groups(event)
