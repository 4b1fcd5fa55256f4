from datetime import datetime
from sqlalchemy import BigInteger, Index, JSON, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base


class ProgressORM(Base):
    __tablename__ = "user_progress"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(255), nullable=False)
    completed_steps: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    current_step: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    time_spent_secs: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    hints_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # растёт при записи курсора, шагов или завершения; по нему проверяется compare-and-swap
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "lesson_id", name="uq_user_lesson"),
        Index("ix_user_progress_user_started", "user_id", "started_at"),
    )

    def __repr__(self) -> str:
        return f"ProgressORM(id={self.id!r}, user_id={self.user_id!r}, lesson_id={self.lesson_id!r})"
