from pydantic import BaseModel


class SpecialtyCount(BaseModel):
    specialty: str
    count: int
    scheduled: int
    completed: int


class CaseAnalytics(BaseModel):
    total: int
    by_status: dict[str, int]
    priority: int
    confirmed_on_ot_list: int
    paediatric: int
    adult: int
    elderly: int
    by_patient_type: dict[str, int]
    by_specialty: list[SpecialtyCount]
    total_rebooks: int
    created_last_30_days: int
