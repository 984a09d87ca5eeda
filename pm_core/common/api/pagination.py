from __future__ import annotations

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class DefaultPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = "page_size"
    max_page_size = 200


def paginate(request, queryset, serializer_class, *, paginator: PageNumberPagination | None = None, after_page=None) -> Response:
    """
    Shared pagination helper to enforce a stable contract:
      { count, next, previous, results }

    after_page(rows) runs once the page has been evaluated (used for
    read-access auditing so the log entry reflects what was returned).
    """
    p = paginator or DefaultPagination()
    page = p.paginate_queryset(queryset, request)
    rows = page if page is not None else list(queryset)
    if after_page is not None:
        after_page(rows)

    ser = serializer_class(rows, many=True)
    if page is not None:
        return p.get_paginated_response(ser.data)
    return Response(ser.data)
