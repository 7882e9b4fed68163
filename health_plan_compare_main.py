import argparse
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from health_plan_audit_funcs import CalculationAuditor
from health_plan_input_validation import validate_family, validate_plans
from health_plan_models import (
    DAYS_PER_YEAR,
    ERROR_RANK,
    MEDICATION_MONTH_DAYS,
    MEMBER_SERVICES,
    MONTHS_PER_YEAR,
    PREMIUM_MONTH_DAYS,
    Comparison,
    FamilyData,
    FamilyMember,
    FamilyTotals,
    MemberEvent,
    MemberResult,
    Milestone,
    MonthlyAccumulation,
    Plan,
    PlanResult,
    ProgressionRow,
    UsageEvent,
    results_to_dict,
)
from health_plan_scenario_io import load_scenario

logger = logging.getLogger(__name__)


class CalculationError(RuntimeError):
    """An accumulator went NaN, infinite or negative while applying a plan."""


def _active(members: Sequence[FamilyMember]) -> List[FamilyMember]:
    return [member for member in members if member.is_active]


def generate_timeline(members: Sequence[FamilyMember],
                      service_costs: Dict[str, float]) -> Tuple[UsageEvent, ...]:
    """
    Convert the family's projected usage into a chronological list of events.
    The timeline is plan-agnostic, so every plan is judged against identical usage.

    Annual service counts are spread over the year at the centers of N equal
    intervals: event i of N lands on floor((365/N)*i + (365/N)/2). Each
    medication with a positive monthly cost is filled 12 times, on day
    month*30 + 1.

    Args:
        members: Family members; inactive members are skipped
        service_costs: Gross cost per unit for each service cost key

    Returns:
        Tuple of UsageEvent sorted by day across all members
    """
    events = []

    for member in _active(members):
        # Annual medical services - spread evenly throughout the year
        for count_field, service_type, cost_key in MEMBER_SERVICES:
            count = getattr(member, count_field)
            if count <= 0:
                continue
            interval = DAYS_PER_YEAR / count
            for i in range(count):
                day = int(np.floor(interval * i + interval / 2))
                events.append(UsageEvent(
                    day=max(day, 1),
                    member_id=member.id,
                    member_name=member.name,
                    event_type='medical',
                    service_type=service_type,
                    gross_cost=float(service_costs.get(cost_key, 0.0)),
                ))

        # Monthly medications - approximate 1st of each month
        for medication in member.medications:
            if not medication.monthly_cost or medication.monthly_cost <= 0:
                continue
            for month in range(MONTHS_PER_YEAR):
                events.append(UsageEvent(
                    day=month * MEDICATION_MONTH_DAYS + 1,
                    member_id=member.id,
                    member_name=member.name,
                    event_type='medication',
                    service_type='medication',
                    gross_cost=float(medication.monthly_cost),
                    medication_name=medication.name or 'Unknown',
                    tier=medication.tier,
                ))

    # Stable sort keeps member and service order for events on the same day
    events.sort(key=lambda event: event.day)

    logger.info(f"Generated usage timeline with {len(events)} events")
    return tuple(events)


def determine_premium_tier(plan: Plan, members: Sequence[FamilyMember]) -> Tuple[str, float]:
    """
    Pick the coverage tier and monthly premium for the covered members.

    One member pays the individual premium. Two adults pay the
    employee+spouse premium when the plan has one. Everyone else pays the
    family premium, falling back to the individual premium when the plan
    lists no family rate.
    """
    active = _active(members)

    if len(active) == 1:
        return 'individual', plan.monthly_premium

    if len(active) == 2:
        # Check if it's employee + spouse (both adults)
        has_children = any(member.is_child for member in active)
        if not has_children and plan.spouse_premium:
            return 'employee+spouse', plan.spouse_premium

    return 'family', plan.family_premium or plan.monthly_premium


@dataclass
class FamilyAccumulator:
    deductible_used: float = 0.0
    rx_deductible_used: float = 0.0
    oop_used: float = 0.0


@dataclass
class MemberAccumulator:
    deductible_used: float = 0.0
    oop_used: float = 0.0


@dataclass
class EventCharge:
    """Raw cost of one event before OOP caps, and what it credits to deductibles."""
    member_cost: float = 0.0
    applied_to_family_deductible: float = 0.0
    applied_to_individual_deductible: float = 0.0
    applied_to_rx_deductible: float = 0.0


def _remaining_medical_deductible(plan: Plan, family: FamilyAccumulator,
                                  member: MemberAccumulator) -> float:
    remaining_family = max(0.0, plan.family_deductible_limit - family.deductible_used)
    remaining_individual = max(0.0, plan.individual_deductible - member.deductible_used)
    return min(remaining_family, remaining_individual)


def calculate_post_deductible_cost(plan: Plan, service_type: str, cost: float) -> float:
    """Copay (never more than the service cost) when the plan has one, else coinsurance."""
    copay = plan.copay_for_service(service_type)
    if copay > 0:
        return min(copay, cost)
    return cost * plan.coinsurance


def calculate_tier_cost(plan: Plan, tier: Optional[int], cost: float) -> float:
    """
    Member cost for a drug under the plan's tier pricing.

    Explicitly typed coinsurance accepts both 20 and 0.2 as 20%. Copays never
    exceed the drug cost. Untyped values below 1 are treated as coinsurance
    rates and anything else as a copay.
    """
    if cost <= 0:
        return 0.0

    rule = plan.drug_cost(tier)
    if rule.cost_type == 'coinsurance':
        rate = rule.value / 100 if rule.value > 1 else rule.value
        return cost * rate
    if rule.cost_type == 'copay':
        return min(rule.value, cost)

    # Legacy plans without type information
    if rule.value < 1:
        return cost * rule.value
    return min(rule.value, cost)


def process_medical_event(plan: Plan, event: UsageEvent, family: FamilyAccumulator,
                          member: MemberAccumulator) -> EventCharge:
    """Deductible first, then copay or coinsurance on whatever is left."""
    applied = min(event.gross_cost, _remaining_medical_deductible(plan, family, member))
    remainder = event.gross_cost - applied

    member_cost = applied
    if remainder > 0:
        member_cost += calculate_post_deductible_cost(plan, event.service_type, remainder)

    return EventCharge(
        member_cost=member_cost,
        applied_to_family_deductible=applied,
        applied_to_individual_deductible=applied,
    )


def process_medication_event(plan: Plan, event: UsageEvent, family: FamilyAccumulator,
                             member: MemberAccumulator) -> EventCharge:
    """
    Price a medication fill.

    With a separate Rx deductible the fill draws only on the family Rx pool
    and never touches the medical deductible. Without one, drugs share the
    medical family/individual deductible before tier pricing applies.
    """
    charge = EventCharge()

    if plan.has_separate_rx_deductible:
        remaining = max(0.0, plan.rx_deductible - family.rx_deductible_used)
        applied = min(event.gross_cost, remaining)
        charge.applied_to_rx_deductible = applied
    else:
        applied = min(event.gross_cost, _remaining_medical_deductible(plan, family, member))
        charge.applied_to_family_deductible = applied
        charge.applied_to_individual_deductible = applied

    remainder = event.gross_cost - applied
    charge.member_cost = applied + (calculate_tier_cost(plan, event.tier, remainder)
                                    if remainder > 0 else 0.0)
    return charge


def process_event(plan: Plan, event: UsageEvent, family: FamilyAccumulator,
                  member: MemberAccumulator) -> EventCharge:
    if event.event_type == 'medical':
        return process_medical_event(plan, event, family, member)
    if event.event_type == 'medication':
        return process_medication_event(plan, event, family, member)
    return EventCharge()


def _check_accumulators(plan: Plan, event: UsageEvent, **values: float) -> None:
    checked = np.array(list(values.values()), dtype=float)
    if np.all(np.isfinite(checked)) and np.all(checked >= 0):
        return
    bad = {name: value for name, value in values.items()
           if not math.isfinite(value) or value < 0}
    raise CalculationError(
        f"Plan {plan.id}: invalid accumulator state after day {event.day} "
        f"event for member {event.member_id}: {bad}")


def apply_plan(plan: Plan, timeline: Sequence[UsageEvent],
               members: Sequence[FamilyMember]) -> List[ProgressionRow]:
    """
    Replay the usage timeline under one plan's rules.

    Events are processed strictly in timeline order. Each event's cost depends
    on how much of the family deductible, the member's deductible, the Rx
    deductible and both OOP maximums earlier events have already used:

    1. Deductible: the part of the gross cost up to the smaller of the
       remaining family and individual deductible is paid in full and
       credited to both pools.
    2. The remainder is priced by copay or coinsurance (tier pricing for drugs).
    3. The member's OOP total is capped at the individual OOP maximum, then the
       family total at the family OOP maximum; the charged cost shrinks to fit.
    4. Premium accrues in whole elapsed months.

    Args:
        plan: Validated plan
        timeline: Day-sorted usage events, not modified
        members: Family members; inactive members are ignored

    Returns:
        One ProgressionRow per event, in timeline order

    Raises:
        CalculationError: if an event references an unknown member or an
            accumulator becomes NaN or negative
    """
    active = _active(members)
    coverage_type, monthly_premium = determine_premium_tier(plan, active)

    family = FamilyAccumulator()
    member_states = {member.id: MemberAccumulator() for member in active}

    individual_oop_limit = plan.individual_oop_limit
    family_oop_limit = plan.family_oop_limit

    progression = []
    for event in timeline:
        member = member_states.get(event.member_id)
        if member is None:
            raise CalculationError(f"Plan {plan.id}: event on day {event.day} "
                                   f"references unknown member {event.member_id}")

        charge = process_event(plan, event, family, member)

        # Individual OOP maximum - clip the member's running total at the ceiling
        new_member_oop = min(member.oop_used + charge.member_cost, individual_oop_limit)
        individually_capped = new_member_oop - member.oop_used

        # Family OOP maximum - same clipping on the individually capped cost
        new_family_oop = min(family.oop_used + individually_capped, family_oop_limit)
        event_cost = new_family_oop - family.oop_used
        if event_cost < individually_capped:
            new_member_oop = member.oop_used + event_cost

        if event_cost < charge.member_cost:
            logger.debug(f"OOP max applied for {event.member_name} on day {event.day}: "
                         f"${charge.member_cost:,.2f} reduced to ${event_cost:,.2f}")

        member.deductible_used += charge.applied_to_individual_deductible
        member.oop_used = new_member_oop
        family.deductible_used += charge.applied_to_family_deductible
        family.rx_deductible_used += charge.applied_to_rx_deductible
        family.oop_used = new_family_oop

        # Premium is billed in whole elapsed months, never more than a year
        months_billed = min(int(np.floor(event.day / PREMIUM_MONTH_DAYS)) + 1, MONTHS_PER_YEAR)
        cumulative_premium = monthly_premium * months_billed

        _check_accumulators(
            plan, event,
            event_cost=event_cost,
            family_deductible_used=family.deductible_used,
            family_rx_deductible_used=family.rx_deductible_used,
            family_oop_used=family.oop_used,
            individual_deductible_used=member.deductible_used,
            individual_oop_used=member.oop_used,
        )

        progression.append(ProgressionRow(
            day=event.day,
            member_id=event.member_id,
            member_name=event.member_name,
            event_type=event.event_type,
            service_type=event.service_type,
            gross_cost=event.gross_cost,
            medication_name=event.medication_name,
            tier=event.tier,
            event_cost=event_cost,
            applied_to_deductible=(charge.applied_to_family_deductible
                                   + charge.applied_to_rx_deductible),
            cumulative_premium=cumulative_premium,
            cumulative_oop=family.oop_used,
            cumulative_total=cumulative_premium + family.oop_used,
            family_deductible_used=family.deductible_used,
            family_rx_deductible_used=family.rx_deductible_used,
            family_oop_used=family.oop_used,
            individual_deductible_used=member.deductible_used,
            individual_oop_used=member.oop_used,
            plan_id=plan.id,
            plan_name=plan.name,
            monthly_premium=monthly_premium,
            coverage_type=coverage_type,
        ))

    logger.info(f"Applied {plan.name} rules to {len(progression)} events")
    return progression


def generate_monthly_accumulation(progression: Sequence[ProgressionRow],
                                  monthly_premium: float) -> List[MonthlyAccumulation]:
    """
    Family out-of-pocket spend at the end of each month.

    Month m closes at day (m+1)*30.4; December also takes any later days.
    Months without events carry the previous value forward and the series is
    kept non-decreasing.
    """
    monthly = []
    previous = 0.0
    index = 0
    for month in range(MONTHS_PER_YEAR):
        cutoff = (month + 1) * PREMIUM_MONTH_DAYS if month < MONTHS_PER_YEAR - 1 else math.inf
        latest = previous
        events = 0
        while index < len(progression) and progression[index].day <= cutoff:
            latest = progression[index].cumulative_oop
            events += 1
            index += 1

        latest = max(latest, previous)
        cumulative_premium = monthly_premium * (month + 1)
        monthly.append(MonthlyAccumulation(
            month=month + 1,
            total_cost=latest,
            events=events,
            cumulative_premium=cumulative_premium,
            cumulative_total=cumulative_premium + latest,
        ))
        previous = latest

    return monthly


def generate_milestones(plan: Plan, progression: Sequence[ProgressionRow]) -> List[Milestone]:
    """
    First days on which the family deductible and family OOP maximum were met.

    A plan with no deductible never records a deductible milestone and a plan
    with no OOP maximum never records an OOP milestone; there is no threshold
    to cross, so nothing is reported on the first row.
    """
    milestones = []
    family_deductible = plan.family_deductible_limit
    family_oop_max = plan.family_oop_limit

    deductible_met = family_deductible <= 0
    oop_max_met = not math.isfinite(family_oop_max)

    for row in progression:
        if not deductible_met and row.family_deductible_used >= family_deductible:
            milestones.append(Milestone(
                type='family_deductible_met',
                day=row.day,
                amount=family_deductible,
                description=f"Family deductible of ${family_deductible:,.0f} met on day {row.day}",
            ))
            deductible_met = True

        if not oop_max_met and row.family_oop_used >= family_oop_max:
            milestones.append(Milestone(
                type='family_oop_met',
                day=row.day,
                amount=family_oop_max,
                description=f"Family out-of-pocket maximum of ${family_oop_max:,.0f} met on day {row.day}",
            ))
            oop_max_met = True

        if deductible_met and oop_max_met:
            break

    return milestones


def summarize(plan: Plan, progression: Sequence[ProgressionRow],
              members: Sequence[FamilyMember]) -> PlanResult:
    """
    Reduce a plan's progression to totals, per-member costs, a monthly
    series and milestones.

    total_with_premiums is the full annual premium plus the family's final
    out-of-pocket total. It is not the last row's cumulative_total, which only
    bills the months elapsed up to the last event.

    A progression with no rows is a family without usage: the result carries
    the premium alone.
    """
    active = _active(members)
    coverage_type, monthly_premium = determine_premium_tier(plan, active)
    annual_premium = monthly_premium * MONTHS_PER_YEAR

    member_results = {member.id: MemberResult(member_id=member.id, member_name=member.name)
                      for member in active}
    medical_costs = 0.0
    rx_costs = 0.0

    for row in progression:
        member_result = member_results[row.member_id]
        if row.event_type == 'medical':
            member_result.medical_costs += row.event_cost
            medical_costs += row.event_cost
        elif row.event_type == 'medication':
            member_result.rx_costs += row.event_cost
            rx_costs += row.event_cost
        member_result.events.append(MemberEvent(
            day=row.day,
            type=row.event_type,
            service_type=row.service_type,
            cost=row.gross_cost,
            member_cost=row.event_cost,
            applied_to_deductible=row.applied_to_deductible,
        ))

    for member_result in member_results.values():
        member_result.total_costs = member_result.medical_costs + member_result.rx_costs

    total_out_of_pocket = progression[-1].cumulative_oop if progression else 0.0

    result = PlanResult(
        plan_id=plan.id,
        plan_name=plan.name or 'Unnamed Plan',
        insurer=plan.insurer or 'Unknown',
        annual_premium=annual_premium,
        monthly_premium=monthly_premium,
        coverage_type=coverage_type,
        family_totals=FamilyTotals(
            medical_costs=medical_costs,
            rx_costs=rx_costs,
            total_out_of_pocket=total_out_of_pocket,
            total_with_premiums=annual_premium + total_out_of_pocket,
        ),
        member_results=member_results,
        monthly_accumulation=generate_monthly_accumulation(progression, monthly_premium),
        milestones=generate_milestones(plan, progression),
        plan_details=plan.details(),
    )

    logger.info(f"Plan {plan.name} calculation complete: premium ${annual_premium:,.2f}, "
                f"out-of-pocket ${total_out_of_pocket:,.2f}, "
                f"total ${result.total_with_premiums:,.2f}")
    return result


def create_error_result(plan: Plan, error: BaseException) -> PlanResult:
    """Placeholder for a plan whose calculation failed; ranks last."""
    return PlanResult(
        plan_id=plan.id,
        plan_name=plan.name or 'Unnamed Plan',
        insurer=plan.insurer or 'Unknown',
        annual_premium=plan.monthly_premium * MONTHS_PER_YEAR,
        monthly_premium=plan.monthly_premium,
        coverage_type='unknown',
        family_totals=FamilyTotals(),
        comparison=Comparison(is_best=False, is_worst=True, rank=ERROR_RANK),
        error=str(error) or type(error).__name__,
    )


def rank_results(results: Dict[str, PlanResult]) -> Dict[str, PlanResult]:
    """
    Annotate results with rank, best/worst flags and savings against the best plan.

    Plans are ordered by total annual cost including premiums; ties keep
    input order. On a tie the first plan in input order is the best or the
    worst, so with equal totals one plan can be both. Failed plans are left
    out of the ordering and ranked last. Results are updated in place and the
    same mapping is returned.
    """
    valid_ids = [plan_id for plan_id, result in results.items() if result.error is None]
    for plan_id, result in results.items():
        if result.error is not None:
            result.comparison = Comparison(is_best=False, is_worst=True, rank=ERROR_RANK)

    if not valid_ids:
        return results

    sorted_ids = sorted(valid_ids, key=lambda plan_id: results[plan_id].total_with_premiums)
    best_id = sorted_ids[0]
    best_total = results[best_id].total_with_premiums
    worst_total = results[sorted_ids[-1]].total_with_premiums
    worst_id = next(plan_id for plan_id in sorted_ids
                    if results[plan_id].total_with_premiums == worst_total)

    for rank, plan_id in enumerate(sorted_ids, start=1):
        total = results[plan_id].total_with_premiums
        savings = total - best_total
        results[plan_id].comparison = Comparison(
            is_best=plan_id == best_id,
            is_worst=plan_id == worst_id,
            rank=rank,
            savings_vs_best=savings,
            percentage_more_than_best=(savings / best_total) * 100 if best_total else 0.0,
        )

    return results


def _evaluate_plan(plan: Plan, timeline: Sequence[UsageEvent],
                   members: Sequence[FamilyMember]) -> Tuple[str, Optional[List[ProgressionRow]], PlanResult]:
    """Apply and summarize one plan; a failure becomes an error placeholder."""
    try:
        progression = apply_plan(plan, timeline, members)
        return plan.id, progression, summarize(plan, progression, members)
    except Exception as error:
        logger.exception(f"Error calculating plan {plan.id}")
        return plan.id, None, create_error_result(plan, error)


class HealthPlanComparison:
    """
    Compare a family's total annual cost across insurance plans.

    Validates the raw input, builds one usage timeline, replays it under every
    plan (in parallel with joblib when n_jobs > 1) and ranks the results. The
    timeline and progressions of the last run are kept for audit exports.
    """

    def __init__(self, n_jobs: int = 1):
        """
        Args:
            n_jobs: Worker count for per-plan evaluation; -1 uses every core,
                0 and other negative values run serially
        """
        self.n_jobs = n_jobs if n_jobs >= 1 or n_jobs == -1 else 1
        self.plans: Dict[str, Plan] = {}
        self.family: Optional[FamilyData] = None
        self.timeline: Tuple[UsageEvent, ...] = ()
        self.progressions: Dict[str, List[ProgressionRow]] = {}
        self.results: Dict[str, PlanResult] = {}

    @property
    def members(self) -> List[FamilyMember]:
        return self.family.active_members if self.family else []

    def calculate_all(self, raw_plans: Sequence[Dict], raw_family: Dict) -> Dict[str, PlanResult]:
        """
        Validate the input and calculate every plan.

        Safe to call again at any time with the latest input; each call
        replaces the previous run.

        Args:
            raw_plans: Plan records as stored by the application
            raw_family: Family record with members and service costs

        Returns:
            Mapping of plan id to ranked PlanResult, in input order

        Raises:
            InputValidationError: if any plan or the family record is malformed
        """
        plans = validate_plans(raw_plans)
        family = validate_family(raw_family)

        self.plans = {plan.id: plan for plan in plans}
        self.family = family
        self.timeline = generate_timeline(family.active_members, family.service_costs)
        self.run_cost_analysis()
        return self.results

    def run_cost_analysis(self) -> Dict[str, PlanResult]:
        """
        Apply every plan to the current timeline and rank the results.
        One plan failing does not stop the others.
        """
        if self.family is None:
            raise ValueError("Must load plans and family data before calculating costs")

        members = self.members
        n_jobs = max(1, min(len(self.plans), self.n_jobs)) if self.n_jobs > 0 else self.n_jobs

        start = datetime.now()
        logger.info(f"Analyzing {len(self.plans)} plans for {len(members)} members "
                    f"over {len(self.timeline)} usage events (n_jobs={n_jobs})")

        evaluated = Parallel(n_jobs=n_jobs)(
            delayed(_evaluate_plan)(plan, self.timeline, members)
            for plan in self.plans.values()
        )

        self.progressions = {}
        self.results = {}
        for plan_id, progression, result in evaluated:
            if progression is not None:
                self.progressions[plan_id] = progression
            self.results[plan_id] = result

        rank_results(self.results)

        logger.info(f"Complete. Runtime: {datetime.now() - start}")
        return self.results

    def get_yearly_totals(self) -> pd.DataFrame:
        """
        Totals per plan, ordered by rank.

        Returns:
            DataFrame indexed by plan id with premium, medical, prescription,
            out-of-pocket and total columns plus the rank
        """
        records = []
        for plan_id, result in self.results.items():
            totals = result.family_totals
            records.append({
                'plan_id': plan_id,
                'plan_name': result.plan_name,
                'annual_premium': result.annual_premium,
                'medical_costs': totals.medical_costs,
                'rx_costs': totals.rx_costs,
                'total_out_of_pocket': totals.total_out_of_pocket,
                'total_with_premiums': totals.total_with_premiums,
                'rank': result.comparison.rank,
                'error': result.error,
            })
        columns = ['plan_id', 'plan_name', 'annual_premium', 'medical_costs', 'rx_costs',
                   'total_out_of_pocket', 'total_with_premiums', 'rank', 'error']
        frame = pd.DataFrame(records, columns=columns)
        return frame.sort_values('rank', kind='stable').set_index('plan_id')

    def print_cost_summaries(self, plan_id: Optional[str] = None) -> None:
        """
        Print the annual cost breakdown for each plan in rank order.

        Args:
            plan_id: Optional specific plan to show. If None, shows all plans.
        """
        totals = self.get_yearly_totals()
        if plan_id is not None:
            totals = totals.loc[[plan_id]]

        print("\nAnnual Cost Summary:")
        print("-" * 50)

        for current_id, row in totals.iterrows():
            result = self.results[current_id]
            print(f"\n#{row['rank']} {row['plan_name']} ({result.insurer}):")
            if result.error:
                print(f"  FAILED: {result.error}")
                continue
            print(f"  Premium:        ${row['annual_premium']:,.2f} ({result.coverage_type})")
            print(f"  Medical:        ${row['medical_costs']:,.2f}")
            print(f"  Prescriptions:  ${row['rx_costs']:,.2f}")
            print(f"  Out-of-pocket:  ${row['total_out_of_pocket']:,.2f}")
            print(f"  Total:          ${row['total_with_premiums']:,.2f}")
            if result.comparison.is_best:
                print("  Lowest total annual cost")
            else:
                print(f"  Costs ${result.comparison.savings_vs_best:,.2f} more than the best plan")
            for milestone in result.milestones:
                print(f"  {milestone.description}")

    def summarize_events(self, member_id: Optional[str] = None) -> None:
        """
        Print every usage event on the timeline, optionally for one member only.

        Args:
            member_id: Optional member to focus on. If None, shows the whole family.
        """
        if member_id:
            print(f"\nUsage timeline for member {member_id}:")
        else:
            print("\nUsage timeline, Entire Family:")

        year_start = pd.Timestamp(year=datetime.now().year, month=1, day=1)
        for event in self.timeline:
            if member_id and event.member_id != member_id:
                continue
            date = (year_start + pd.Timedelta(days=event.day - 1)).strftime('%B %d')
            what = event.medication_name if event.event_type == 'medication' else event.service_type
            who = '' if member_id else f"{event.member_name} "
            print(f"On {date}, {who}had a(n) {what} (${event.gross_cost:,.2f}).")


def calculate_all(raw_plans: Sequence[Dict], raw_family: Dict, n_jobs: int = 1) -> Dict[str, PlanResult]:
    """Validate, calculate and rank every plan in one call."""
    return HealthPlanComparison(n_jobs=n_jobs).calculate_all(raw_plans, raw_family)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Compare family health plan costs for a saved scenario.")
    parser.add_argument('scenario', help="Scenario JSON exported by the comparison tool")
    parser.add_argument('--audit-csv', help="Write the per-event calculation audit trail to this CSV")
    parser.add_argument('--json', action='store_true', help="Print results as JSON instead of a summary")
    parser.add_argument('--n-jobs', type=int, default=1, help="Plans to evaluate in parallel")
    parser.add_argument('--verbose', action='store_true', help="Log calculation progress")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    scenario = load_scenario(args.scenario)
    comparison = HealthPlanComparison(n_jobs=args.n_jobs)
    comparison.calculate_all(scenario['plans'], scenario['familyData'])

    if args.json:
        print(json.dumps(results_to_dict(comparison.results), indent=2))
    else:
        comparison.print_cost_summaries()

    if args.audit_csv:
        CalculationAuditor(comparison).export_audit_csv(args.audit_csv)
        print(f"\nAudit trail written to {args.audit_csv}")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
