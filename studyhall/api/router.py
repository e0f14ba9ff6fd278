"""Router that answers with and without a trailing slash instead of redirecting."""

from typing import Any, Callable

from fastapi import APIRouter
from fastapi.types import DecoratedCallable


class TrailingSlashRouter(APIRouter):
    """APIRouter that registers every route twice, as ``/path`` and ``/path/``.

    Only the form without the slash is published in the OpenAPI schema. The web
    client posts to ``/billing/change-tier`` and ``/billing/change-tier/``
    interchangeably, and a 307 redirect would drop the body of a POST in some
    browsers.
    """

    def api_route(
        self, path: str, *, include_in_schema: bool = True, **kwargs: Any
    ) -> Callable[[DecoratedCallable], DecoratedCallable]:
        """Register ``path`` and its trailing-slash twin for the decorated endpoint.

        Args:
            path (str): The route path, with or without a trailing slash.
            include_in_schema (bool): Whether the slash-less form is documented.
            **kwargs: Passed through to ``APIRouter.api_route``.

        Returns:
            Callable[[DecoratedCallable], DecoratedCallable]: The registering decorator.
        """
        canonical = path.rstrip("/")
        register_canonical = super().api_route(
            canonical, include_in_schema=include_in_schema, **kwargs
        )
        register_slashed = super().api_route(f"{canonical}/", include_in_schema=False, **kwargs)

        def decorator(func: DecoratedCallable) -> DecoratedCallable:
            register_slashed(func)
            return register_canonical(func)

        return decorator
