"""
Audit trail and invariant checks for a completed plan comparison.

The audit table is the primary tool for verifying the deductible and
out-of-pocket arithmetic: one row per usage event, with every plan's event
cost and running accumulators side by side.
"""

import logging
import re
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
import xarray as xr

logger = logging.getLogger(__name__)

AUDIT_BASE_COLUMNS = ['Day', 'Date_Approx', 'Member_ID', 'Member_Name',
                      'Event_Type', 'Service_Type', 'Gross_Cost']

# (ProgressionRow attribute, audit column suffix)
AUDIT_PLAN_FIELDS = (
    ('event_cost', 'Event_Cost'),
    ('cumulative_premium', 'Cum_Premium'),
    ('cumulative_oop', 'Cum_OOP'),
    ('cumulative_total', 'Cum_Total'),
    ('family_deductible_used', 'Family_Deductible_Used'),
    ('family_rx_deductible_used', 'Family_Rx_Deductible_Used'),
    ('family_oop_used', 'Family_OOP_Used'),
)

FAMILY_DAILY_FIELDS = ('cumulative_oop', 'family_deductible_used',
                       'family_rx_deductible_used', 'family_oop_used')
MEMBER_DAILY_FIELDS = ('individual_deductible_used', 'individual_oop_used')

# Reference year for approximate calendar dates in the audit trail
AUDIT_YEAR = 2024
TOLERANCE = 1e-6


def clean_column_name(name: str) -> str:
    """Reduce a plan or member name to letters, digits and single underscores."""
    return re.sub(r'_+', '_', re.sub(r'[^a-zA-Z0-9]', '_', str(name))).strip('_')


def day_to_approximate_date(day: int) -> str:
    return (date(AUDIT_YEAR, 1, 1) + timedelta(days=day - 1)).isoformat()


class CalculationAuditor:
    """
    Audit and invariant checking for a HealthPlanComparison run.
    """

    def __init__(self, comparison):
        """
        Initialize auditor with a calculated comparison.

        Args:
            comparison: A HealthPlanComparison on which calculate_all has run
        """
        self.comparison = comparison

    @property
    def member_ids(self) -> List[str]:
        return [member.id for member in self.comparison.members]

    @property
    def _member_labels(self) -> Dict[str, str]:
        # Member names label the columns; repeated names also get the member id
        names = [clean_column_name(member.name) or clean_column_name(member.id)
                 for member in self.comparison.members]
        return {member.id: name if names.count(name) == 1 else f"{name}_{clean_column_name(member.id)}"
                for member, name in zip(self.comparison.members, names)}

    @property
    def _plan_prefixes(self) -> Dict[str, str]:
        # Same rule as member labels: a repeated plan name also gets the plan id
        plan_ids = list(self.comparison.progressions)
        names = [clean_column_name(self.comparison.plans[plan_id].name) or clean_column_name(plan_id)
                 for plan_id in plan_ids]
        return {plan_id: name if names.count(name) == 1 else f"{name}_{clean_column_name(plan_id)}"
                for plan_id, name in zip(plan_ids, names)}

    def audit_table(self) -> pd.DataFrame:
        """
        Flat audit trail of the last calculation.

        Returns:
            DataFrame with one row per usage event. Besides the event columns,
            each plan contributes its event cost, cumulative premium, OOP and
            total, family deductible, Rx deductible and OOP used, and every
            member's individual deductible and OOP used at that point.
        """
        timeline = self.comparison.timeline
        progressions = self.comparison.progressions
        members = self.comparison.members
        member_labels = self._member_labels
        plan_prefixes = self._plan_prefixes

        table = pd.DataFrame({
            'Day': [event.day for event in timeline],
            'Date_Approx': [day_to_approximate_date(event.day) for event in timeline],
            'Member_ID': [event.member_id for event in timeline],
            'Member_Name': [event.member_name for event in timeline],
            'Event_Type': [event.event_type for event in timeline],
            'Service_Type': [event.medication_name if event.event_type == 'medication'
                             else event.service_type for event in timeline],
            'Gross_Cost': [event.gross_cost for event in timeline],
        }, columns=AUDIT_BASE_COLUMNS)

        for plan_id, progression in progressions.items():
            prefix = plan_prefixes[plan_id]
            if len(progression) != len(timeline):
                raise ValueError(f"Progression for plan {plan_id} has {len(progression)} rows "
                                 f"but the timeline has {len(timeline)} events")

            for attribute, suffix in AUDIT_PLAN_FIELDS:
                table[f"{prefix}_{suffix}"] = [round(getattr(row, attribute), 2) for row in progression]

            # Each member's accumulators carry forward between that member's own events
            latest = {member.id: (0.0, 0.0) for member in members}
            member_columns = {member.id: ([], []) for member in members}
            for row in progression:
                latest[row.member_id] = (row.individual_deductible_used, row.individual_oop_used)
                for member_id, (deductible_used, oop_used) in latest.items():
                    member_columns[member_id][0].append(round(deductible_used, 2))
                    member_columns[member_id][1].append(round(oop_used, 2))

            for member in members:
                member_label = member_labels[member.id]
                deductible_values, oop_values = member_columns[member.id]
                table[f"{prefix}_{member_label}_Individual_Deductible_Used"] = deductible_values
                table[f"{prefix}_{member_label}_Individual_OOP_Used"] = oop_values

        return table

    def export_audit_csv(self, path: Optional[Union[str, Path]] = None) -> Optional[str]:
        """
        Write the audit trail as CSV.

        Args:
            path: Destination file. If None, the CSV text is returned instead.
        """
        if not self.comparison.progressions:
            logger.warning("No progression data available to export")
        csv_text = self.audit_table().to_csv(path, index=False)
        if path is not None:
            logger.info(f"Calculation audit CSV written to {path}")
        return csv_text

    def accumulation_dataset(self) -> xr.Dataset:
        """
        Day-by-day accumulator state for every calculated plan.

        Accumulators are forward-filled from the last event on or before each
        day, so every day 1-365 carries the state of the year so far. Plans
        whose calculation failed are left out.

        Returns:
            xarray Dataset with family-level variables over (plan, day),
            member-level variables over (plan, family_member, day), daily
            event costs and each plan's limits over (plan,)
        """
        days = np.arange(1, 366)
        plan_ids = list(self.comparison.progressions)
        member_ids = self.member_ids

        family_arrays = {name: np.zeros((len(plan_ids), len(days))) for name in FAMILY_DAILY_FIELDS}
        member_arrays = {name: np.zeros((len(plan_ids), len(member_ids), len(days)))
                         for name in MEMBER_DAILY_FIELDS}
        daily_costs = np.zeros((len(plan_ids), len(member_ids), len(days)))

        for plan_idx, plan_id in enumerate(plan_ids):
            rows = pd.DataFrame([vars(row) for row in self.comparison.progressions[plan_id]],
                                columns=['day', 'member_id', 'event_cost']
                                + list(FAMILY_DAILY_FIELDS) + list(MEMBER_DAILY_FIELDS))

            family_daily = rows.groupby('day')[list(FAMILY_DAILY_FIELDS)].last()
            family_daily = family_daily.reindex(days).ffill().fillna(0.0)
            for name in FAMILY_DAILY_FIELDS:
                family_arrays[name][plan_idx] = family_daily[name].to_numpy()

            for member_idx, member_id in enumerate(member_ids):
                member_rows = rows[rows['member_id'] == member_id]
                member_daily = member_rows.groupby('day')[list(MEMBER_DAILY_FIELDS)].last()
                member_daily = member_daily.reindex(days).ffill().fillna(0.0)
                for name in MEMBER_DAILY_FIELDS:
                    member_arrays[name][plan_idx, member_idx] = member_daily[name].to_numpy()

                costs = member_rows.groupby('day')['event_cost'].sum().reindex(days).fillna(0.0)
                daily_costs[plan_idx, member_idx] = costs.to_numpy()

        plans = [self.comparison.plans[plan_id] for plan_id in plan_ids]
        data_vars = {name: (('plan', 'day'), values) for name, values in family_arrays.items()}
        data_vars.update({name: (('plan', 'family_member', 'day'), values)
                          for name, values in member_arrays.items()})
        data_vars['member_daily_costs'] = (('plan', 'family_member', 'day'), daily_costs)
        data_vars['individual_deductible'] = ('plan', np.array([p.individual_deductible for p in plans], dtype=float))
        data_vars['family_deductible'] = ('plan', np.array([p.family_deductible_limit for p in plans], dtype=float))
        data_vars['individual_oop_max'] = ('plan', np.array([p.individual_oop_limit for p in plans], dtype=float))
        data_vars['family_oop_max'] = ('plan', np.array([p.family_oop_limit for p in plans], dtype=float))

        return xr.Dataset(
            data_vars=data_vars,
            coords={
                'plan': plan_ids,
                'family_member': member_ids,
                'day': days,
            },
        )

    def check_invariants(self) -> pd.DataFrame:
        """
        Verify the engine's guarantees on the last calculation.

        Per plan: family and individual OOP never exceed their maximums,
        deductible accumulators never decrease and never exceed their
        deductibles, and member costs add up to the family OOP total. Across
        plans: ranks follow total annual cost and exactly one plan is best.

        Returns:
            DataFrame with Plan, Check, Passed and Detail columns
        """
        checks = []

        def record(plan_id: str, check: str, passed: bool, detail: str = '') -> None:
            checks.append({'Plan': plan_id, 'Check': check, 'Passed': bool(passed), 'Detail': detail})

        dataset = self.accumulation_dataset()
        for plan_id in dataset.plan.values:
            plan_data = dataset.sel(plan=plan_id)

            family_oop = plan_data.family_oop_used.values
            family_limit = float(plan_data.family_oop_max)
            record(plan_id, 'family_oop_within_max',
                   np.all(family_oop <= family_limit + TOLERANCE),
                   f"max {family_oop.max():,.2f} vs limit {family_limit:,.2f}")

            individual_oop = plan_data.individual_oop_used.values
            individual_limit = float(plan_data.individual_oop_max)
            record(plan_id, 'individual_oop_within_max',
                   np.all(individual_oop <= individual_limit + TOLERANCE),
                   f"max {individual_oop.max():,.2f} vs limit {individual_limit:,.2f}")

            family_deductible = plan_data.family_deductible_used.values
            individual_deductible = plan_data.individual_deductible_used.values
            record(plan_id, 'deductibles_non_decreasing',
                   np.all(np.diff(family_deductible) >= -TOLERANCE)
                   and np.all(np.diff(individual_deductible, axis=-1) >= -TOLERANCE))
            record(plan_id, 'deductibles_within_limits',
                   np.all(family_deductible <= float(plan_data.family_deductible) + TOLERANCE)
                   and np.all(individual_deductible <= float(plan_data.individual_deductible) + TOLERANCE))

            member_total = float(plan_data.member_daily_costs.sum())
            record(plan_id, 'member_costs_match_family_oop',
                   abs(member_total - float(family_oop[-1])) <= 0.01,
                   f"members {member_total:,.2f} vs family {float(family_oop[-1]):,.2f}")

        ranked = [result for result in self.comparison.results.values() if result.error is None]
        ranked.sort(key=lambda result: result.comparison.rank)
        totals = [result.total_with_premiums for result in ranked]
        record('*', 'ranks_follow_totals', all(a <= b for a, b in zip(totals, totals[1:])))
        if ranked:
            best = [result for result in ranked if result.comparison.is_best]
            record('*', 'single_best_plan',
                   len(best) == 1 and best[0].comparison.savings_vs_best == 0,
                   f"{len(best)} plans flagged best")

        return pd.DataFrame(checks, columns=['Plan', 'Check', 'Passed', 'Detail'])

    def print_validation_report(self) -> None:
        """
        Print a human-readable report of the invariant checks.
        """
        report = self.check_invariants()

        print("CALCULATION VALIDATION REPORT")
        print("=" * 80)
        print(f"Plans calculated: {len(self.comparison.progressions)}  "
              f"Usage events: {len(self.comparison.timeline)}")
        print("-" * 80)

        for plan_id, plan_checks in report.groupby('Plan', sort=False):
            print(f"\n{plan_id}:")
            for _, row in plan_checks.iterrows():
                status = 'OK' if row['Passed'] else 'FAILED'
                detail = f" ({row['Detail']})" if row['Detail'] else ''
                print(f"  {row['Check']:<32} {status}{detail}")

        failures = int((~report['Passed']).sum())
        if failures:
            print(f"\nWARNING: {failures} invariant checks failed")
