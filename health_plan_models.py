"""
Data structures shared by the health plan comparison engine.

Plans and family members arrive from the embedding application as plain
JSON-like dicts; health_plan_input_validation turns them into the dataclasses
below before any calculation runs.
"""

import math
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, List

# Calendar approximations used throughout the engine
DAYS_PER_YEAR = 365
MONTHS_PER_YEAR = 12
MEDICATION_MONTH_DAYS = 30      # medications are filled on day month*30 + 1
PREMIUM_MONTH_DAYS = 30.4       # premium is billed in whole elapsed months

# National average gross cost per unit of service
BASE_SERVICE_COSTS = {
    'primary_visit': 150,
    'specialist_visit': 250,
    'therapy_session': 120,
    'lab_work': 200,
    'basic_imaging': 400,
    'advanced_imaging': 1500,
    'physical_therapy': 115,
    'emergency_room': 1800,
    'urgent_care': 225,
}

COST_AREA_MULTIPLIERS = {
    'low': 0.75,     # rural and smaller cities
    'medium': 1.0,   # national average
    'high': 1.35,    # high cost metros
}

# (FamilyMember count field, event service type, cost table key)
MEMBER_SERVICES = (
    ('primary_visits', 'primary_visit', 'primary_visit'),
    ('specialist_visits', 'specialist_visit', 'specialist_visit'),
    ('therapy_visits', 'therapy_session', 'therapy_session'),
    ('lab_work', 'lab_work', 'lab_work'),
    ('imaging', 'imaging', 'basic_imaging'),
    ('physical_therapy', 'physical_therapy', 'physical_therapy'),
)

RELATIONSHIPS = ('self', 'spouse', 'child', 'other')
DRUG_COST_TYPES = ('copay', 'coinsurance')
DRUG_TIER_FIELDS = {
    1: 'tier1_drug_cost',
    2: 'tier2_drug_cost',
    3: 'tier3_drug_cost',
    4: 'specialty_drug_cost',
}

ERROR_RANK = 999


def service_costs_for_area(cost_area: str = 'medium') -> Dict[str, float]:
    """
    Return the default service cost table scaled for a regional cost area.

    Unknown areas use the national average. Costs are rounded to whole dollars.
    """
    multiplier = COST_AREA_MULTIPLIERS.get(cost_area, 1.0)
    # round-half-up so 0.75 * 150 = 112.5 becomes 113 as the application shows it
    return {key: float(math.floor(value * multiplier + 0.5))
            for key, value in BASE_SERVICE_COSTS.items()}


@dataclass
class Medication:
    """A recurring monthly prescription."""
    name: str
    tier: int = 1
    monthly_cost: float = 0.0
    quantity: int = 1


@dataclass
class FamilyMember:
    """
    One covered person and their projected annual usage.

    Attributes:
        id: Member identifier, unique within a family
        name: Display name
        relationship: One of self, spouse, child, other
        age: Age in years
        is_active: Only active members take part in a calculation
        primary_visits .. physical_therapy: Annual counts per service type
        medications: Monthly prescriptions
    """
    id: str
    name: str = 'Unknown'
    relationship: str = 'other'
    age: int = 35
    is_active: bool = True
    primary_visits: int = 0
    specialist_visits: int = 0
    therapy_visits: int = 0
    lab_work: int = 0
    imaging: int = 0
    physical_therapy: int = 0
    medications: List[Medication] = field(default_factory=list)

    @property
    def is_child(self) -> bool:
        return self.relationship == 'child' or self.age < 18


@dataclass
class FamilyData:
    """Validated family record: members plus the service cost table."""
    members: List[FamilyMember]
    service_costs: Dict[str, float]
    cost_area: str = 'medium'

    @property
    def active_members(self) -> List[FamilyMember]:
        return [member for member in self.members if member.is_active]


@dataclass
class DrugCost:
    """
    Plan pricing for one drug tier.

    Attributes:
        value: Copay amount or coinsurance rate
        cost_type: 'copay', 'coinsurance', or None when the source did not say
    """
    value: float = 0.0
    cost_type: Optional[str] = None


@dataclass
class Plan:
    """
    Financial parameters of one insurance plan.

    Premiums are monthly. monthly_premium is the individual (employee only)
    premium; spouse_premium and family_premium are optional higher tiers.
    An OOP maximum of 0 means the plan has no cap.
    """
    id: str
    name: str
    insurer: str = 'Unknown'
    plan_type: str = 'PPO'
    year: Optional[int] = None
    monthly_premium: float = 0.0
    spouse_premium: float = 0.0
    family_premium: float = 0.0
    individual_deductible: float = 0.0
    family_deductible: float = 0.0
    individual_oop_max: float = 0.0
    family_oop_max: float = 0.0
    primary_copay: float = 0.0
    specialist_copay: float = 0.0
    mental_health_copay: float = 0.0
    coinsurance: float = 0.0
    rx_deductible: float = 0.0
    tier1_drug_cost: DrugCost = field(default_factory=DrugCost)
    tier2_drug_cost: DrugCost = field(default_factory=DrugCost)
    tier3_drug_cost: DrugCost = field(default_factory=DrugCost)
    specialty_drug_cost: DrugCost = field(default_factory=DrugCost)

    @property
    def family_deductible_limit(self) -> float:
        return self.family_deductible or self.individual_deductible * 2

    @property
    def individual_oop_limit(self) -> float:
        return self.individual_oop_max if self.individual_oop_max > 0 else math.inf

    @property
    def family_oop_limit(self) -> float:
        # Unset family limit falls back to twice the individual limit, then no cap
        limit = self.family_oop_max or self.individual_oop_max * 2
        return limit if limit > 0 else math.inf

    @property
    def has_separate_rx_deductible(self) -> bool:
        return self.rx_deductible > 0

    def drug_cost(self, tier: Optional[int]) -> DrugCost:
        """Pricing rule for a drug tier; unknown tiers are priced as tier 1."""
        return getattr(self, DRUG_TIER_FIELDS.get(tier, 'tier1_drug_cost'))

    def copay_for_service(self, service_type: str) -> float:
        """Copay for a medical service type, 0 when the plan uses coinsurance."""
        if service_type == 'primary_visit':
            return self.primary_copay
        if service_type == 'specialist_visit':
            return self.specialist_copay
        if service_type == 'therapy_session':
            return self.mental_health_copay or self.primary_copay
        return 0.0

    def details(self) -> Dict[str, float]:
        """Flat summary of the plan's cost sharing for display."""
        return {
            'individual_deductible': self.individual_deductible,
            'family_deductible': self.family_deductible,
            'individual_oop_max': self.individual_oop_max,
            'family_oop_max': self.family_oop_max,
            'coinsurance': self.coinsurance,
            'primary_copay': self.primary_copay,
            'specialist_copay': self.specialist_copay,
            'rx_deductible': self.rx_deductible,
            'tier1_drug_cost': self.tier1_drug_cost.value,
            'tier2_drug_cost': self.tier2_drug_cost.value,
            'tier3_drug_cost': self.tier3_drug_cost.value,
            'specialty_drug_cost': self.specialty_drug_cost.value,
        }


@dataclass(frozen=True)
class UsageEvent:
    """A single billable occurrence on the family's usage timeline."""
    day: int
    member_id: str
    member_name: str
    event_type: str                     # 'medical' or 'medication'
    service_type: str
    gross_cost: float
    medication_name: Optional[str] = None
    tier: Optional[int] = None


@dataclass(frozen=True)
class ProgressionRow:
    """
    A usage event annotated with one plan's accumulator state after it.

    event_cost is what the member actually owes for the event once deductible,
    copay/coinsurance and both OOP caps have been applied. The family_* and
    individual_* fields are running totals including this event.
    """
    day: int
    member_id: str
    member_name: str
    event_type: str
    service_type: str
    gross_cost: float
    medication_name: Optional[str]
    tier: Optional[int]
    event_cost: float
    applied_to_deductible: float
    cumulative_premium: float
    cumulative_oop: float
    cumulative_total: float
    family_deductible_used: float
    family_rx_deductible_used: float
    family_oop_used: float
    individual_deductible_used: float
    individual_oop_used: float
    plan_id: str
    plan_name: str
    monthly_premium: float
    coverage_type: str


@dataclass
class MemberEvent:
    day: int
    type: str
    service_type: str
    cost: float
    member_cost: float
    applied_to_deductible: float


@dataclass
class MemberResult:
    member_id: str
    member_name: str
    medical_costs: float = 0.0
    rx_costs: float = 0.0
    total_costs: float = 0.0
    events: List[MemberEvent] = field(default_factory=list)


@dataclass
class FamilyTotals:
    medical_costs: float = 0.0
    rx_costs: float = 0.0
    total_out_of_pocket: float = 0.0
    total_with_premiums: float = 0.0


@dataclass
class MonthlyAccumulation:
    """Cumulative family out-of-pocket spend at the end of a month (1-12)."""
    month: int
    total_cost: float
    events: int
    cumulative_premium: float
    cumulative_total: float


@dataclass
class Milestone:
    type: str
    day: int
    amount: float
    description: str


@dataclass
class Comparison:
    is_best: bool = False
    is_worst: bool = False
    rank: int = ERROR_RANK
    savings_vs_best: Optional[float] = None
    percentage_more_than_best: Optional[float] = None


@dataclass
class PlanResult:
    """
    Summary of one plan's year for the family.

    error is set only on placeholder results for plans whose calculation
    failed; those carry zeroed totals and rank last.
    """
    plan_id: str
    plan_name: str
    insurer: str
    annual_premium: float
    monthly_premium: float
    coverage_type: str
    family_totals: FamilyTotals
    member_results: Dict[str, MemberResult] = field(default_factory=dict)
    monthly_accumulation: List[MonthlyAccumulation] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    plan_details: Dict[str, float] = field(default_factory=dict)
    comparison: Comparison = field(default_factory=Comparison)
    error: Optional[str] = None

    @property
    def total_with_premiums(self) -> float:
        return self.family_totals.total_with_premiums

    def to_dict(self) -> Dict:
        """JSON-serializable representation."""
        return asdict(self)


def results_to_dict(results: Dict[str, PlanResult]) -> Dict[str, Dict]:
    return {plan_id: result.to_dict() for plan_id, result in results.items()}

