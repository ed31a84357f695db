"""
Organization (tenant) models.

Users can belong to multiple organizations and have a current active organization.
"""
from sqlalchemy import String, ForeignKey, Table, Column, Boolean, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatbot_rbac.core.database.base import Base, TimestampMixin, generate_ulid


# Association table for many-to-many relationship between users and organizations
user_organizations = Table(
    "user_organizations",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("organization_id", String(26), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True),
    Column("joined_at", DateTime, nullable=False, server_default=func.now()),
)


class Organization(Base, TimestampMixin):
    """
    Organization model representing a chatbot SaaS tenant.
    """
    __tablename__ = "organizations"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)

    # Organization settings
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    users: Mapped[list["User"]] = relationship(  # type: ignore
        "User",
        secondary=user_organizations,
        back_populates="organizations",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name!r}, slug={self.slug})>"
