from .config import RouteDescriptor, RouteTable
from .errors import RouteNotFoundError


def resolve(table: RouteTable, path: str) -> RouteDescriptor:
    """Return the first route whose prefix is a literal prefix of ``path``.

    Routes are scanned in declared order; overlapping prefixes resolve to the
    earlier entry. Raises :class:`RouteNotFoundError` when nothing matches.
    """
    route = table.find(path)
    if route is None:
        raise RouteNotFoundError(path)
    return route
