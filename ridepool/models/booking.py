import uuid
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, ForeignKey, CheckConstraint, Index, func, text
from sqlalchemy.orm import Mapped, mapped_column
from ridepool.database import Base


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("seats_booked >= 1", name="ck_bookings_seats_positive"),
        # One open (pending/confirmed) booking per user per ride
        Index(
            "uq_bookings_open_per_user",
            "ride_id",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed')"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ride_id: Mapped[str] = mapped_column(String, ForeignKey("rides.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    seats_booked: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # pending | confirmed | cancelled | completed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    # unpaid | paid | refunded
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="unpaid")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
