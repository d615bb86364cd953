"""
Shared/common Pydantic schemas used across multiple endpoints
"""

from pydantic import computed_field

from tenantguard.schemas.base import CamelModel


class UserInfo(CamelModel):
    """
    Display details of a user.

    Embedded in impersonation responses and session listings; never carries
    credentials or status fields.
    """

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


class Pagination(CamelModel):
    page: int
    page_size: int
    total_count: int

    @computed_field(alias="totalPages")  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        if self.total_count == 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size

    @computed_field(alias="hasNext")  # type: ignore[prop-decorator]
    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @computed_field(alias="hasPrevious")  # type: ignore[prop-decorator]
    @property
    def has_previous(self) -> bool:
        return self.page > 1


class SuccessResponse(CamelModel):
    success: bool = True
    message: str
