"""Evaluation and case evaluation model definitions."""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import relationship

from kcs_portal.database import Base

CASE_FLAGS = (
    'kb_potential',
    'article_linked',
    'article_improved',
    'improvement_opportunity',
    'article_created',
    'create_opportunity',
    'relevant_link',
)


class Evaluation(Base):
    """One coaching session for one engineer."""
    __tablename__ = "evaluations"

    id = Column(Integer, primary_key=True)
    engineer_id = Column(Integer, ForeignKey("engineers.id"), nullable=False)
    coach_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    evaluation_date = Column(Date, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    updated_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, server_default=func.current_timestamp())
    updated_at = Column(DateTime, server_default=func.current_timestamp(), onupdate=func.current_timestamp())
    deleted_at = Column(DateTime, nullable=True)

    engineer = relationship("Engineer", lazy="joined")
    coach = relationship("User", foreign_keys=[coach_user_id], lazy="joined")
    cases = relationship(
        "CaseEvaluation",
        order_by="CaseEvaluation.case_number",
        primaryjoin="and_(Evaluation.id == CaseEvaluation.evaluation_id, CaseEvaluation.deleted_at.is_(None))",
        viewonly=True,
    )

    @property
    def engineer_name(self) -> str | None:
        return self.engineer.name if self.engineer else None

    @property
    def coach_name(self) -> str | None:
        return self.coach.name if self.coach else None

    @property
    def lead_name(self) -> str | None:
        if self.engineer is None or self.engineer.lead is None:
            return None
        return self.engineer.lead.name

    @property
    def case_count(self) -> int:
        return sum(1 for case in self.cases if case.case_id)


class CaseEvaluation(Base):
    """A single reviewed support case inside an evaluation."""
    __tablename__ = "case_evaluations"

    id = Column(Integer, primary_key=True)
    evaluation_id = Column(Integer, ForeignKey("evaluations.id", ondelete="CASCADE"), nullable=False)
    case_number = Column(Integer, nullable=False)
    case_id = Column(String, nullable=True)
    kb_potential = Column(Boolean, nullable=False, default=False)
    article_linked = Column(Boolean, nullable=False, default=False)
    article_improved = Column(Boolean, nullable=False, default=False)
    improvement_opportunity = Column(Boolean, nullable=False, default=False)
    article_created = Column(Boolean, nullable=False, default=False)
    create_opportunity = Column(Boolean, nullable=False, default=False)
    relevant_link = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.current_timestamp())
    deleted_at = Column(DateTime, nullable=True)
