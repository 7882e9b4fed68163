"""
Normalization and validation of raw plan and family records.

Raw records are the JSON-like dicts the embedding application stores, using
camelCase keys (monthlyPremium, primaryVisits, ...). snake_case keys are
accepted as well. Anything that would make the engine produce a wrong number
is rejected with an InputValidationError; harmless oddities (negative costs,
out of range tiers) are corrected and reported as DataValidationWarning.
"""

import logging
import math
import numbers
import re
import warnings
from typing import Any, Dict, List, Optional

from health_plan_models import (
    COST_AREA_MULTIPLIERS,
    DRUG_COST_TYPES,
    DRUG_TIER_FIELDS,
    RELATIONSHIPS,
    DrugCost,
    FamilyData,
    FamilyMember,
    Medication,
    Plan,
    service_costs_for_area,
)

logger = logging.getLogger(__name__)

# Plan numeric fields -> camelCase key used by the application
PLAN_NUMERIC_FIELDS = {
    'monthly_premium': 'monthlyPremium',
    'spouse_premium': 'spousePremium',
    'family_premium': 'familyPremium',
    'individual_deductible': 'individualDeductible',
    'family_deductible': 'familyDeductible',
    'individual_oop_max': 'individualOOPMax',
    'family_oop_max': 'familyOOPMax',
    'primary_copay': 'primaryCopay',
    'specialist_copay': 'specialistCopay',
    'mental_health_copay': 'mentalHealthCopay',
    'rx_deductible': 'rxDeductible',
}

DRUG_COST_KEYS = {
    'tier1_drug_cost': 'tier1DrugCost',
    'tier2_drug_cost': 'tier2DrugCost',
    'tier3_drug_cost': 'tier3DrugCost',
    'specialty_drug_cost': 'specialtyDrugCost',
}

MEMBER_USAGE_KEYS = {
    'primary_visits': 'primaryVisits',
    'specialist_visits': 'specialistVisits',
    'therapy_visits': 'therapyVisits',
    'lab_work': 'labWork',
    'imaging': 'imaging',
    'physical_therapy': 'physicalTherapy',
}

SERVICE_COST_KEYS = {
    'primary_visit': 'primaryVisit',
    'specialist_visit': 'specialistVisit',
    'therapy_session': 'therapySession',
    'lab_work': 'labWork',
    'basic_imaging': 'basicImaging',
    'advanced_imaging': 'advancedImaging',
    'physical_therapy': 'physicalTherapy',
    'emergency_room': 'emergencyRoom',
    'urgent_care': 'urgentCare',
}

RX_DEDUCTIBLE_PATTERN = re.compile(r'prescription drugs - \$(\d+)', re.IGNORECASE)


class InputValidationError(ValueError):
    """
    A plan or family record is malformed and cannot be calculated.

    Attributes:
        field: Name of the offending field, when one can be singled out
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PlanValidationError(InputValidationError):
    pass


class FamilyValidationError(InputValidationError):
    pass


class CorruptRecordError(FamilyValidationError):
    """Member keys look like flattened nested fields, e.g. 'medications[0].name'."""


class DataValidationWarning(UserWarning):
    """An input value was outside its valid range and has been corrected."""


def _lookup(raw: Dict[str, Any], snake_key: str, camel_key: str) -> Any:
    if camel_key in raw:
        return raw[camel_key]
    return raw.get(snake_key)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == '')


def _parse_number(value: Any, field_name: str, owner: str, error_cls) -> Optional[float]:
    """
    Convert a raw numeric value, returning None when the field is absent.

    Numbers and numeric strings are accepted; booleans, NaN, infinities and
    anything else raise error_cls.
    """
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise error_cls(f"{owner}: Invalid numeric value for {field_name}: {value!r}", field_name)
    if isinstance(value, numbers.Real):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(',', '').lstrip('$'))
        except ValueError:
            raise error_cls(f"{owner}: Invalid numeric value for {field_name}: {value!r}",
                            field_name) from None
    else:
        raise error_cls(f"{owner}: Invalid numeric value for {field_name}: {value!r}", field_name)

    if not math.isfinite(number):
        raise error_cls(f"{owner}: Invalid numeric value for {field_name}: {value!r}", field_name)
    return number


def _non_negative(number: float, field_name: str, owner: str) -> float:
    if number < 0:
        warnings.warn(f"{owner}: Negative value for {field_name}: {number}, using 0",
                      DataValidationWarning, stacklevel=3)
        return 0.0
    return number


def _parse_coinsurance(raw_value: Any, owner: str) -> float:
    """Medical coinsurance as a decimal rate; accepts a number or {'medical': number}."""
    if _is_blank(raw_value):
        return 0.0
    if isinstance(raw_value, dict):
        if 'medical' not in raw_value:
            raise PlanValidationError(f"{owner}: Invalid coinsurance structure: {raw_value!r}",
                                      'coinsurance')
        rate = _parse_number(raw_value['medical'], 'coinsurance.medical', owner, PlanValidationError)
        logger.debug(f"{owner}: Using coinsurance.medical ({rate}) from object structure")
    elif isinstance(raw_value, (numbers.Real, str)) and not isinstance(raw_value, bool):
        rate = _parse_number(raw_value, 'coinsurance', owner, PlanValidationError)
    else:
        raise PlanValidationError(f"{owner}: Invalid coinsurance structure: {raw_value!r}",
                                  'coinsurance')

    rate = _non_negative(rate or 0.0, 'coinsurance', owner)
    if rate > 1:
        warnings.warn(f"{owner}: Coinsurance {rate} read as a percentage ({rate / 100:.2f})",
                      DataValidationWarning, stacklevel=2)
        rate = rate / 100
    return rate


def _parse_drug_cost(raw: Dict[str, Any], field_name: str, owner: str) -> DrugCost:
    camel_key = DRUG_COST_KEYS[field_name]
    value = _parse_number(_lookup(raw, field_name, camel_key), field_name, owner, PlanValidationError)
    value = _non_negative(value, field_name, owner) if value is not None else 0.0

    cost_type = _lookup(raw, f"{field_name}_type", f"{camel_key}Type")
    if _is_blank(cost_type):
        cost_type = None
    elif cost_type not in DRUG_COST_TYPES:
        raise PlanValidationError(f"{owner}: Unknown cost type for {field_name}: {cost_type!r}",
                                  f"{field_name}_type")
    return DrugCost(value=value, cost_type=cost_type)


def validate_plan(raw: Any) -> Plan:
    """
    Validate one raw plan record and return a normalized Plan.

    Absent numeric fields default to 0 and negative values are clamped to 0.
    familyDeductible and familyOOPMax default to twice the individual value
    when missing or zero.

    Args:
        raw: Plan dict as stored by the application

    Returns:
        Normalized Plan

    Raises:
        PlanValidationError: on a missing id or name, a non-numeric value in a
            numeric field, a malformed coinsurance or an unknown drug cost type
    """
    if not isinstance(raw, dict):
        raise PlanValidationError('Plan data must be an object')
    if _is_blank(raw.get('id')):
        raise PlanValidationError(f"Plan missing required ID field: {raw!r}", 'id')
    plan_id = str(raw['id'])
    if _is_blank(raw.get('name')):
        raise PlanValidationError(f"Plan {plan_id} missing required name field", 'name')

    owner = f"Plan {plan_id}"
    values = {}
    for field_name, camel_key in PLAN_NUMERIC_FIELDS.items():
        number = _parse_number(_lookup(raw, field_name, camel_key), field_name, owner,
                               PlanValidationError)
        values[field_name] = _non_negative(number, field_name, owner) if number is not None else 0.0

    # Family limits default to twice the individual limit
    if not values['family_deductible']:
        values['family_deductible'] = values['individual_deductible'] * 2
    if not values['family_oop_max']:
        values['family_oop_max'] = values['individual_oop_max'] * 2

    # Some imported plans only describe the Rx deductible in free text
    network_type = _lookup(raw, 'network_type', 'networkType')
    if not values['rx_deductible'] and isinstance(network_type, str):
        match = RX_DEDUCTIBLE_PATTERN.search(network_type)
        if match:
            values['rx_deductible'] = float(match.group(1))
            logger.info(f"{owner}: Extracted rx_deductible from description: ${values['rx_deductible']:,.0f}")

    year = _parse_number(raw.get('year'), 'year', owner, PlanValidationError)

    return Plan(
        id=plan_id,
        name=str(raw['name']),
        insurer=raw.get('insurer') or 'Unknown',
        plan_type=_lookup(raw, 'plan_type', 'planType') or 'PPO',
        year=int(year) if year is not None else None,
        coinsurance=_parse_coinsurance(raw.get('coinsurance'), owner),
        **values,
        **{field_name: _parse_drug_cost(raw, field_name, owner)
           for field_name in DRUG_TIER_FIELDS.values()},
    )


def validate_plans(raw_plans: Any) -> List[Plan]:
    """Validate a list of plans, rejecting an empty list and duplicate ids."""
    if not raw_plans:
        raise PlanValidationError('No plans provided for calculation')
    if not isinstance(raw_plans, (list, tuple)):
        raise PlanValidationError('Plans must be provided as a list')

    plans = [validate_plan(raw) for raw in raw_plans]
    seen = set()
    for plan in plans:
        if plan.id in seen:
            raise PlanValidationError(f"Duplicate plan id: {plan.id}", 'id')
        seen.add(plan.id)
    return plans


def _parse_count(raw_value: Any, field_name: str, owner: str) -> int:
    number = _parse_number(raw_value, field_name, owner, FamilyValidationError)
    if number is None:
        return 0
    return int(_non_negative(number, field_name, owner))


def _validate_medication(raw: Any, index: int, owner: str) -> Medication:
    if not isinstance(raw, dict):
        raise FamilyValidationError(f"{owner}: Medication {index} is not a valid object",
                                    f"medications[{index}]")

    med_owner = f"{owner}, medication {index}"
    tier = _parse_number(raw.get('tier'), 'tier', med_owner, FamilyValidationError)
    tier = int(tier) if tier is not None else 1
    if tier not in DRUG_TIER_FIELDS:
        warnings.warn(f"{owner}: Invalid medication tier {tier}, using tier 1",
                      DataValidationWarning, stacklevel=2)
        tier = 1

    monthly_cost = _parse_number(_lookup(raw, 'monthly_cost', 'monthlyCost'), 'monthly_cost',
                                 med_owner, FamilyValidationError)
    monthly_cost = _non_negative(monthly_cost, 'monthly_cost', med_owner) if monthly_cost is not None else 0.0

    quantity = _parse_number(raw.get('quantity'), 'quantity', med_owner, FamilyValidationError)

    return Medication(
        name=raw.get('name') or '',
        tier=tier,
        monthly_cost=monthly_cost,
        quantity=int(quantity) if quantity else 1,
    )


def validate_member(raw: Any, index: int = 0) -> FamilyMember:
    """
    Validate one raw family member.

    Raises:
        CorruptRecordError: if any key contains '[' and ']', the signature of
            a caller flattening nested medication fields onto the member
        FamilyValidationError: on a missing id or a non-numeric usage value
    """
    if not isinstance(raw, dict):
        raise FamilyValidationError(f"Family member {index} is not a valid object")

    label = raw.get('name') or raw.get('id') or index
    suspicious = [key for key in raw if '[' in key and ']' in key]
    if suspicious:
        raise CorruptRecordError(
            f"Corrupt data detected in member {label}: found corrupted fields "
            f"{', '.join(suspicious)}. This indicates a data storage bug that must be fixed at the source.",
            suspicious[0])

    if _is_blank(raw.get('id')):
        raise FamilyValidationError(f"Family member {index} missing required ID", 'id')

    owner = f"Member {label}"
    relationship = raw.get('relationship') or 'other'
    if relationship not in RELATIONSHIPS:
        warnings.warn(f"{owner}: Unknown relationship {relationship!r}, using 'other'",
                      DataValidationWarning, stacklevel=2)
        relationship = 'other'

    age = _parse_number(raw.get('age'), 'age', owner, FamilyValidationError)

    medications = raw.get('medications') or []
    if not isinstance(medications, list):
        raise FamilyValidationError(f"{owner}: medications must be a list", 'medications')

    usage = {field_name: _parse_count(_lookup(raw, field_name, camel_key), field_name, owner)
             for field_name, camel_key in MEMBER_USAGE_KEYS.items()}

    return FamilyMember(
        id=str(raw['id']),
        name=raw.get('name') or 'Unknown',
        relationship=relationship,
        age=int(_non_negative(age, 'age', owner)) if age is not None else 35,
        is_active=_lookup(raw, 'is_active', 'isActive') is not False,
        medications=[_validate_medication(med, med_index, owner)
                     for med_index, med in enumerate(medications)],
        **usage,
    )


def validate_service_costs(raw_costs: Any, cost_area: str = 'medium') -> Dict[str, float]:
    """
    Build the service cost table: regional defaults overlaid with supplied values.
    """
    costs = service_costs_for_area(cost_area)
    if _is_blank(raw_costs):
        return costs
    if not isinstance(raw_costs, dict):
        raise FamilyValidationError('serviceCosts must be an object', 'serviceCosts')

    for key, camel_key in SERVICE_COST_KEYS.items():
        number = _parse_number(_lookup(raw_costs, key, camel_key), key, 'Service costs',
                               FamilyValidationError)
        if number is not None:
            costs[key] = _non_negative(number, key, 'Service costs')
    return costs


def validate_family(raw: Any) -> FamilyData:
    """
    Validate the family record.

    Args:
        raw: Dict with 'members', optional 'serviceCosts' and 'costArea'

    Returns:
        FamilyData with every member (active or not) and a complete cost table

    Raises:
        FamilyValidationError: when there are no members, no active members,
            or any member or cost entry is malformed
    """
    if not isinstance(raw, dict):
        raise FamilyValidationError('Family data must be an object')
    members = raw.get('members')
    if not isinstance(members, list):
        raise FamilyValidationError('Family data must have a members array', 'members')
    if not members:
        raise FamilyValidationError('No family data provided for calculation', 'members')

    cost_area = _lookup(raw, 'cost_area', 'costArea') or 'medium'
    if cost_area not in COST_AREA_MULTIPLIERS:
        warnings.warn(f"Unknown cost area {cost_area!r}, using national average",
                      DataValidationWarning, stacklevel=2)
        cost_area = 'medium'

    family = FamilyData(
        members=[validate_member(member, index) for index, member in enumerate(members)],
        service_costs=validate_service_costs(_lookup(raw, 'service_costs', 'serviceCosts'), cost_area),
        cost_area=cost_area,
    )
    if not family.active_members:
        raise FamilyValidationError('Family has no active members', 'members')

    ids = [member.id for member in family.members]
    if len(set(ids)) != len(ids):
        raise FamilyValidationError('Family member ids must be unique', 'id')

    return family
