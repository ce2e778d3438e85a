import uuid
from datetime import date, datetime

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.registrations_service.models.enums import (
    MembershipPaymentStatus,
    RegistrationPaymentStatus,
    RegistrationType,
    SetupIntentStatus,
    enum_values,
)
from sqlalchemy import Boolean, Date, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Survey flags collected at signup
    is_lgbtq: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_goalie: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Saved payment method
    stripe_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stripe_payment_method_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    setup_intent_status: Mapped[SetupIntentStatus] = mapped_column(
        SAEnum(
            SetupIntentStatus,
            name="setup_intent_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=SetupIntentStatus.NONE,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def __repr__(self):
        return f"<User {self.email}>"


class Membership(Base):
    """A purchasable membership type."""

    __tablename__ = "memberships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Prices in cents
    price_monthly: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_annual: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounting_code: Mapped[str | None] = mapped_column(String(32), nullable=True)

    allow_discounts: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    allow_monthly: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<Membership {self.name}>"


class UserMembership(Base):
    """A purchased membership instance with its validity window."""

    __tablename__ = "user_memberships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )
    membership_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("memberships.id"), index=True, nullable=False
    )

    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date] = mapped_column(Date, nullable=False)

    payment_status: Mapped[MembershipPaymentStatus] = mapped_column(
        SAEnum(
            MembershipPaymentStatus,
            name="membership_payment_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=MembershipPaymentStatus.PENDING,
        nullable=False,
    )
    months_purchased: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_paid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True
    )
    # Links to payments.id once a payment exists
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, index=True, nullable=True
    )
    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<UserMembership {self.user_id} {self.membership_id}>"


class Season(Base):
    __tablename__ = "seasons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    def __repr__(self):
        return f"<Season {self.name}>"


class Registration(Base):
    """An event, team, scrimmage or tournament users can register for."""

    __tablename__ = "registrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[RegistrationType] = mapped_column(
        SAEnum(
            RegistrationType,
            name="registration_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    season_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("seasons.id"), index=True, nullable=True
    )
    required_membership_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("memberships.id"), nullable=True
    )

    # A registration is a draft until published
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Event dates (single events); teams fall back to the season
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Registration window
    presale_start_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    regular_start_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    registration_end_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    presale_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Per-game alternates, charged when a captain or admin picks them
    allow_alternates: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    alternate_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    alternate_accounting_code: Mapped[str | None] = mapped_column(
        String(32), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<Registration {self.name}>"


class RegistrationCategory(Base):
    """A priced sub-division of a registration (e.g. Player, Goalie)."""

    __tablename__ = "registration_categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("registrations.id"), index=True, nullable=False
    )
    custom_name: Mapped[str] = mapped_column(String(255), nullable=False)
    required_membership_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("memberships.id"), nullable=True
    )

    # Cents
    price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounting_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # NULL means unlimited
    max_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<RegistrationCategory {self.custom_name}>"


class UserRegistration(Base):
    __tablename__ = "user_registrations"
    __table_args__ = (
        # Backstop for duplicate-registration races
        Index(
            "uq_user_registrations_paid",
            "user_id",
            "registration_id",
            unique=True,
            postgresql_where=text("payment_status = 'paid'"),
            sqlite_where=text("payment_status = 'paid'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )
    registration_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("registrations.id"), index=True, nullable=False
    )
    registration_category_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("registration_categories.id"), index=True, nullable=True
    )

    payment_status: Mapped[RegistrationPaymentStatus] = mapped_column(
        SAEnum(
            RegistrationPaymentStatus,
            name="registration_payment_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=RegistrationPaymentStatus.AWAITING_PAYMENT,
        nullable=False,
    )
    # Links to payments.id once a payment exists
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, index=True, nullable=True
    )

    # Cents
    registration_fee: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_paid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    presale_code_used: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_code_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # Slot claims older than this are released by the sweep
    processing_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    registered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refunded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<UserRegistration {self.user_id} {self.registration_id} {self.payment_status}>"


class WaitlistEntry(Base):
    __tablename__ = "waitlists"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )
    registration_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("registrations.id"), index=True, nullable=False
    )
    category_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("registration_categories.id"), index=True, nullable=False
    )
    # Ordering key within (registration, category); gaps are allowed
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_code_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    removed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Admin who moved the entry into a registration
    selected_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    def __repr__(self):
        return f"<WaitlistEntry {self.category_id} #{self.position}>"


class AlternateRegistration(Base):
    """A user available to fill in for individual games of a registration."""

    __tablename__ = "user_alternate_registrations"
    __table_args__ = (
        UniqueConstraint("user_id", "registration_id", name="uq_alternate_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )
    registration_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("registrations.id"), index=True, nullable=False
    )
    discount_code_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<AlternateRegistration {self.user_id} {self.registration_id}>"


class AlternateGame(Base):
    """A single game alternates can be selected for."""

    __tablename__ = "alternate_games"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("registrations.id"), index=True, nullable=False
    )
    game_description: Mapped[str] = mapped_column(String(255), nullable=False)
    game_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<AlternateGame {self.game_description}>"


class AlternateSelection(Base):
    """An alternate picked, and charged, for one game."""

    __tablename__ = "alternate_selections"
    __table_args__ = (
        UniqueConstraint("game_id", "user_id", name="uq_alternate_selection"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    game_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("alternate_games.id"), index=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )
    discount_code_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    # Links to payments.id
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, index=True, nullable=True
    )
    amount_charged: Mapped[int] = mapped_column(Integer, nullable=False)
    selected_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    selected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<AlternateSelection {self.game_id} {self.user_id}>"
