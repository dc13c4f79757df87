from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response

from common.utils import success_envelope


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination behavior for list endpoints.

    Clients can tune page size with `?page_size=` but values are capped to keep
    payload sizes predictable. Pages are wrapped in the `{success, data}` envelope.
    """

    page_size_query_param = "page_size"
    max_page_size = 200

    def get_paginated_response(self, data):
        return Response(
            success_envelope(
                data,
                count=self.page.paginator.count,
                next=self.get_next_link(),
                previous=self.get_previous_link(),
            )
        )
