"""
Permission identifier helpers.

A permission is addressed by the canonical string "<Resource>:<action>",
e.g. "Product:create" or "CustomScript:inject_code". The superadmin
effective set is the single wildcard "*".
"""
WILDCARD = "*"
SEPARATOR = ":"


def make_identifier(resource: str, action: str) -> str:
    """Build the canonical identifier for a (resource, action) pair."""
    return f"{resource}{SEPARATOR}{action}"


def split_identifier(identifier: str) -> tuple[str, str]:
    """
    Split an identifier into (resource, action).

    Returns ("", "") for strings that are not identifiers, so callers can
    compare without guarding.
    """
    resource, separator, action = identifier.partition(SEPARATOR)
    if not separator or not resource or not action:
        return "", ""
    return resource, action


def grants(permissions: frozenset[str], identifier: str) -> bool:
    """True if the effective set contains the wildcard or the identifier."""
    return WILDCARD in permissions or identifier in permissions
