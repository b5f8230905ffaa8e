"""Response models shared by the route modules."""

from datetime import date, datetime

from pydantic import BaseModel


class UserResponse(BaseModel):
    id: int
    ms_user_id: str | None = None
    email: str
    name: str
    is_coach: bool
    is_lead: bool
    is_admin: bool
    is_manager: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    class Config:
        from_attributes = True


class EngineerResponse(BaseModel):
    id: int
    name: str
    lead_user_id: int | None = None
    is_active: bool
    created_at: datetime | None = None
    lead_name: str | None = None
    coach_name: str | None = None

    class Config:
        from_attributes = True


class CoachAssignmentResponse(BaseModel):
    id: int
    engineer_id: int
    coach_user_id: int
    start_date: date
    end_date: date | None = None
    is_active: bool
    created_at: datetime | None = None
    engineer_name: str | None = None
    coach_name: str | None = None

    class Config:
        from_attributes = True


class CaseEvaluationResponse(BaseModel):
    id: int
    evaluation_id: int
    case_number: int
    case_id: str | None = None
    kb_potential: bool
    article_linked: bool
    article_improved: bool
    improvement_opportunity: bool
    article_created: bool
    create_opportunity: bool
    relevant_link: bool
    notes: str | None = None
    created_at: datetime | None = None
    deleted_at: datetime | None = None

    class Config:
        from_attributes = True


class EvaluationSummaryResponse(BaseModel):
    id: int
    engineer_id: int
    coach_user_id: int
    evaluation_date: date
    created_by: int
    updated_by: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    engineer_name: str | None = None
    coach_name: str | None = None
    lead_name: str | None = None
    case_count: int = 0

    class Config:
        from_attributes = True


class EvaluationResponse(EvaluationSummaryResponse):
    cases: list[CaseEvaluationResponse] = []


class EvaluationStats(BaseModel):
    total_evaluations: int = 0
    total_cases: int = 0
    evaluated_cases: int = 0
    kb_potential_count: int = 0
    article_linked_count: int = 0
    article_improved_count: int = 0
    improvement_opportunity_count: int = 0
    article_created_count: int = 0
    create_opportunity_count: int = 0
    relevant_link_count: int = 0
    kb_potential_percentage: int = 0
    article_linked_percentage: int = 0
    article_improved_percentage: int = 0
    improvement_opportunity_percentage: int = 0
    article_created_percentage: int = 0
    create_opportunity_percentage: int = 0
    relevant_link_percentage: int = 0
    link_rate: int = 0
    average_score: int = 0
