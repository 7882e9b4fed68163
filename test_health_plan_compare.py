import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest import mock

import pandas as pd

import health_plan_compare_main
from health_plan_compare_main import (
    CalculationError,
    HealthPlanComparison,
    apply_plan,
    calculate_all,
    calculate_post_deductible_cost,
    calculate_tier_cost,
    determine_premium_tier,
    generate_milestones,
    generate_monthly_accumulation,
    generate_timeline,
    main,
    rank_results,
    summarize,
)
from health_plan_input_validation import PlanValidationError
from health_plan_models import (
    DrugCost,
    FamilyMember,
    FamilyTotals,
    Medication,
    Plan,
    PlanResult,
    UsageEvent,
    results_to_dict,
    service_costs_for_area,
)


def medical_event(day, member_id, gross_cost, service_type='specialist_visit'):
    return UsageEvent(day=day, member_id=member_id, member_name=member_id.title(),
                      event_type='medical', service_type=service_type, gross_cost=gross_cost)


def sample_plans():
    return [
        {
            'id': 'gold', 'name': 'Gold PPO', 'insurer': 'Acme Health',
            'monthlyPremium': 300, 'familyPremium': 800,
            'individualDeductible': 500, 'familyDeductible': 1000,
            'individualOOPMax': 3000, 'familyOOPMax': 6000,
            'primaryCopay': 20, 'specialistCopay': 40, 'coinsurance': 0.1,
            'tier1DrugCost': 10, 'tier1DrugCostType': 'copay',
        },
        {
            'id': 'bronze', 'name': 'Bronze HDHP', 'insurer': 'Acme Health',
            'monthlyPremium': 150, 'familyPremium': 450,
            'individualDeductible': 3000, 'individualOOPMax': 7000,
            'coinsurance': 0.3, 'tier1DrugCost': 15,
        },
    ]


def sample_family():
    return {
        'members': [
            {'id': 'm1', 'name': 'Alex', 'relationship': 'self', 'age': 40,
             'primaryVisits': 4, 'specialistVisits': 2,
             'medications': [{'name': 'Statin', 'tier': 1, 'monthlyCost': 30}]},
            {'id': 'm2', 'name': 'Sam', 'relationship': 'child', 'age': 8,
             'primaryVisits': 2, 'labWork': 1},
        ],
        'costArea': 'medium',
    }


class TestUsageTimeline(unittest.TestCase):
    """Spreading annual usage over the year."""

    def setUp(self):
        self.costs = service_costs_for_area('medium')

    def test_visits_land_at_interval_centers(self):
        member = FamilyMember(id='m1', name='Alex', primary_visits=4)
        timeline = generate_timeline([member], self.costs)

        self.assertEqual([event.day for event in timeline], [45, 136, 228, 319])
        self.assertTrue(all(event.gross_cost == 150.0 for event in timeline))
        self.assertTrue(all(event.service_type == 'primary_visit' for event in timeline))

    def test_single_visit_mid_year(self):
        member = FamilyMember(id='m1', specialist_visits=1)
        timeline = generate_timeline([member], self.costs)
        self.assertEqual(len(timeline), 1)
        self.assertEqual(timeline[0].day, 182)
        self.assertEqual(timeline[0].gross_cost, 250.0)

    def test_daily_usage_never_falls_on_day_zero(self):
        member = FamilyMember(id='m1', therapy_visits=365)
        timeline = generate_timeline([member], self.costs)
        self.assertEqual(len(timeline), 365)
        self.assertEqual(min(event.day for event in timeline), 1)
        self.assertTrue(all(1 <= event.day <= 365 for event in timeline))

    def test_imaging_uses_basic_imaging_cost(self):
        member = FamilyMember(id='m1', imaging=1)
        timeline = generate_timeline([member], self.costs)
        self.assertEqual(timeline[0].service_type, 'imaging')
        self.assertEqual(timeline[0].gross_cost, 400.0)

    def test_medications_filled_monthly(self):
        member = FamilyMember(id='m1', medications=[Medication(name='Statin', tier=2, monthly_cost=45)])
        timeline = generate_timeline([member], self.costs)

        self.assertEqual([event.day for event in timeline], [month * 30 + 1 for month in range(12)])
        self.assertTrue(all(event.event_type == 'medication' for event in timeline))
        self.assertTrue(all(event.tier == 2 and event.medication_name == 'Statin' for event in timeline))

    def test_free_medications_skipped(self):
        member = FamilyMember(id='m1', medications=[Medication(name='Sample', monthly_cost=0)])
        self.assertEqual(generate_timeline([member], self.costs), ())

    def test_sorted_across_members_and_inactive_skipped(self):
        members = [
            FamilyMember(id='m1', primary_visits=2),
            FamilyMember(id='m2', primary_visits=3),
            FamilyMember(id='m3', primary_visits=12, is_active=False),
        ]
        timeline = generate_timeline(members, self.costs)

        days = [event.day for event in timeline]
        self.assertEqual(days, sorted(days))
        self.assertEqual(len(timeline), 5)
        self.assertNotIn('m3', {event.member_id for event in timeline})

    def test_zero_usage_gives_empty_timeline(self):
        self.assertEqual(generate_timeline([FamilyMember(id='m1')], self.costs), ())


class TestPremiumTier(unittest.TestCase):

    def setUp(self):
        self.plan = Plan(id='p1', name='Test', monthly_premium=200, spouse_premium=450, family_premium=700)

    def test_individual(self):
        self.assertEqual(determine_premium_tier(self.plan, [FamilyMember(id='a')]), ('individual', 200))

    def test_two_adults_use_spouse_premium(self):
        members = [FamilyMember(id='a', relationship='self', age=40),
                   FamilyMember(id='b', relationship='spouse', age=38)]
        self.assertEqual(determine_premium_tier(self.plan, members), ('employee+spouse', 450))

    def test_adult_and_child_use_family_premium(self):
        members = [FamilyMember(id='a', age=40), FamilyMember(id='b', age=12)]
        self.assertEqual(determine_premium_tier(self.plan, members), ('family', 700))

    def test_missing_tiers_fall_back(self):
        plan = Plan(id='p2', name='Flat', monthly_premium=250)
        members = [FamilyMember(id='a', age=40), FamilyMember(id='b', age=41)]
        self.assertEqual(determine_premium_tier(plan, members), ('family', 250))

    def test_inactive_members_not_covered(self):
        members = [FamilyMember(id='a'), FamilyMember(id='b', is_active=False)]
        self.assertEqual(determine_premium_tier(self.plan, members), ('individual', 200))


class TestCostSharing(unittest.TestCase):
    """Copay, coinsurance and drug tier pricing."""

    def test_copay_never_exceeds_service_cost(self):
        plan = Plan(id='p1', name='Test', primary_copay=30, coinsurance=0.2)
        self.assertEqual(calculate_post_deductible_cost(plan, 'primary_visit', 20.0), 20.0)
        self.assertEqual(calculate_post_deductible_cost(plan, 'primary_visit', 150.0), 30.0)

    def test_coinsurance_without_copay(self):
        plan = Plan(id='p1', name='Test', primary_copay=30, coinsurance=0.2)
        self.assertAlmostEqual(calculate_post_deductible_cost(plan, 'lab_work', 200.0), 40.0)

    def test_therapy_uses_mental_health_copay(self):
        plan = Plan(id='p1', name='Test', primary_copay=30, mental_health_copay=15)
        self.assertEqual(calculate_post_deductible_cost(plan, 'therapy_session', 120.0), 15.0)
        plan = Plan(id='p1', name='Test', primary_copay=30)
        self.assertEqual(calculate_post_deductible_cost(plan, 'therapy_session', 120.0), 30.0)

    def test_coinsurance_percent_or_decimal(self):
        for value in (20, 0.2):
            plan = Plan(id='p1', name='Test', tier2_drug_cost=DrugCost(value, 'coinsurance'))
            self.assertAlmostEqual(calculate_tier_cost(plan, 2, 100.0), 20.0)

    def test_typed_copay_clamped(self):
        plan = Plan(id='p1', name='Test', tier3_drug_cost=DrugCost(40, 'copay'))
        self.assertEqual(calculate_tier_cost(plan, 3, 25.0), 25.0)
        self.assertEqual(calculate_tier_cost(plan, 3, 100.0), 40.0)

    def test_untyped_values(self):
        plan = Plan(id='p1', name='Test',
                    tier1_drug_cost=DrugCost(0.25),
                    specialty_drug_cost=DrugCost(15))
        self.assertAlmostEqual(calculate_tier_cost(plan, 1, 100.0), 25.0)
        self.assertEqual(calculate_tier_cost(plan, 4, 100.0), 15.0)
        self.assertEqual(calculate_tier_cost(plan, 4, 10.0), 10.0)

    def test_zero_cost_drug(self):
        plan = Plan(id='p1', name='Test', tier1_drug_cost=DrugCost(10, 'copay'))
        self.assertEqual(calculate_tier_cost(plan, 1, 0.0), 0.0)


class TestPlanRules(unittest.TestCase):
    """Replaying a timeline under one plan's deductible and OOP rules."""

    def test_simple_deductible_exhaustion(self):
        plan = Plan(id='p1', name='Test', individual_deductible=500, coinsurance=0.2)
        member = FamilyMember(id='m1')
        progression = apply_plan(plan, [medical_event(10, 'm1', 2000.0)], [member])

        self.assertEqual(len(progression), 1)
        self.assertAlmostEqual(progression[0].event_cost, 800.0)
        self.assertEqual(progression[0].applied_to_deductible, 500.0)
        self.assertEqual(progression[0].individual_deductible_used, 500.0)
        self.assertEqual(progression[0].family_deductible_used, 500.0)

    def test_individual_oop_cap_mid_event(self):
        plan = Plan(id='p1', name='Test', coinsurance=1.0, individual_oop_max=2000)
        timeline = [medical_event(10, 'm1', 1900.0),
                    medical_event(20, 'm1', 300.0),
                    medical_event(30, 'm1', 500.0)]
        progression = apply_plan(plan, timeline, [FamilyMember(id='m1')])

        self.assertEqual([row.event_cost for row in progression], [1900.0, 100.0, 0.0])
        self.assertEqual([row.individual_oop_used for row in progression], [1900.0, 2000.0, 2000.0])
        self.assertEqual(progression[-1].family_oop_used, 2000.0)

    def test_separate_rx_deductible(self):
        plan = Plan(id='p1', name='Test', individual_deductible=500, rx_deductible=100,
                    tier1_drug_cost=DrugCost(10, 'copay'))
        member = FamilyMember(id='m1', medications=[Medication(name='Generic', tier=1, monthly_cost=50)])
        timeline = generate_timeline([member], service_costs_for_area())
        progression = apply_plan(plan, timeline, [member])

        self.assertEqual([row.event_cost for row in progression], [50.0, 50.0] + [10.0] * 10)
        self.assertEqual(progression[-1].family_rx_deductible_used, 100.0)
        self.assertTrue(all(row.family_deductible_used == 0 for row in progression))
        self.assertTrue(all(row.individual_deductible_used == 0 for row in progression))

    def test_larger_rx_deductible_takes_longer(self):
        plan = Plan(id='p1', name='Test', rx_deductible=200, tier1_drug_cost=DrugCost(10, 'copay'))
        member = FamilyMember(id='m1', medications=[Medication(name='Generic', monthly_cost=50)])
        progression = apply_plan(plan, generate_timeline([member], service_costs_for_area()), [member])

        self.assertEqual([row.event_cost for row in progression], [50.0] * 4 + [10.0] * 8)
        self.assertEqual(progression[-1].family_rx_deductible_used, 200.0)

    def test_drugs_share_medical_deductible_without_rx_deductible(self):
        plan = Plan(id='p1', name='Test', individual_deductible=500,
                    tier1_drug_cost=DrugCost(10, 'copay'))
        member = FamilyMember(id='m1', medications=[Medication(name='Generic', monthly_cost=50)])
        progression = apply_plan(plan, generate_timeline([member], service_costs_for_area()), [member])

        self.assertEqual([row.event_cost for row in progression], [50.0] * 10 + [10.0] * 2)
        self.assertEqual(progression[-1].individual_deductible_used, 500.0)
        self.assertEqual(progression[-1].family_rx_deductible_used, 0.0)

    def test_family_deductible_spillover(self):
        plan = Plan(id='p1', name='Test', individual_deductible=1000, family_deductible=1500,
                    coinsurance=0.2)
        members = [FamilyMember(id='a'), FamilyMember(id='b'), FamilyMember(id='c')]
        timeline = [medical_event(10, 'a', 1000.0),
                    medical_event(11, 'b', 1000.0),
                    medical_event(12, 'c', 1000.0)]
        progression = apply_plan(plan, timeline, members)

        costs = [row.event_cost for row in progression]
        self.assertAlmostEqual(costs[0], 1000.0)
        self.assertAlmostEqual(costs[1], 600.0)
        self.assertAlmostEqual(costs[2], 200.0)
        self.assertEqual(progression[-1].family_deductible_used, 1500.0)
        self.assertEqual(progression[1].individual_deductible_used, 500.0)
        self.assertEqual(progression[2].individual_deductible_used, 0.0)

    def test_family_oop_cap(self):
        plan = Plan(id='p1', name='Test', coinsurance=1.0, individual_oop_max=3000, family_oop_max=5000)
        members = [FamilyMember(id='a'), FamilyMember(id='b'), FamilyMember(id='c')]
        timeline = [medical_event(10, 'a', 3000.0),
                    medical_event(11, 'b', 3000.0),
                    medical_event(12, 'c', 500.0)]
        progression = apply_plan(plan, timeline, members)

        self.assertEqual([row.event_cost for row in progression], [3000.0, 2000.0, 0.0])
        self.assertEqual(progression[1].individual_oop_used, 2000.0)
        self.assertEqual(progression[-1].family_oop_used, 5000.0)
        self.assertEqual(sum(row.event_cost for row in progression), progression[-1].family_oop_used)

    def test_unset_oop_max_means_no_cap(self):
        plan = Plan(id='p1', name='Test', coinsurance=1.0)
        progression = apply_plan(plan, [medical_event(10, 'a', 50000.0)], [FamilyMember(id='a')])
        self.assertEqual(progression[0].event_cost, 50000.0)

    def test_premium_accrues_by_whole_months(self):
        plan = Plan(id='p1', name='Test', monthly_premium=100)
        timeline = [medical_event(1, 'a', 0.0), medical_event(31, 'a', 0.0),
                    medical_event(200, 'a', 0.0), medical_event(365, 'a', 0.0)]
        progression = apply_plan(plan, timeline, [FamilyMember(id='a')])

        self.assertEqual([row.cumulative_premium for row in progression], [100, 200, 700, 1200])
        self.assertEqual(progression[-1].coverage_type, 'individual')

    def test_accumulators_never_decrease(self):
        members = [FamilyMember(id='a', primary_visits=6, specialist_visits=4, lab_work=3,
                                medications=[Medication(name='Brand', tier=3, monthly_cost=400)]),
                   FamilyMember(id='b', age=9, primary_visits=3, imaging=2)]
        plan = Plan(id='p1', name='Test', individual_deductible=800, family_deductible=1600,
                    individual_oop_max=2500, family_oop_max=5000, coinsurance=0.3,
                    primary_copay=25, tier3_drug_cost=DrugCost(0.4, 'coinsurance'))
        progression = apply_plan(plan, generate_timeline(members, service_costs_for_area('high')), members)

        for previous, current in zip(progression, progression[1:]):
            self.assertGreaterEqual(current.family_oop_used, previous.family_oop_used)
            self.assertGreaterEqual(current.family_deductible_used, previous.family_deductible_used)
        self.assertLessEqual(progression[-1].family_oop_used, 5000)
        self.assertTrue(all(row.individual_oop_used <= 2500 for row in progression))
        self.assertTrue(all(row.event_cost >= 0 for row in progression))

    def test_unknown_member_raises(self):
        plan = Plan(id='p1', name='Test')
        with self.assertRaises(CalculationError):
            apply_plan(plan, [medical_event(10, 'ghost', 100.0)], [FamilyMember(id='a')])

    def test_timeline_not_modified(self):
        plan = Plan(id='p1', name='Test', individual_deductible=500, coinsurance=0.2)
        timeline = (medical_event(10, 'a', 2000.0), medical_event(20, 'a', 100.0))
        snapshot = list(timeline)
        apply_plan(plan, timeline, [FamilyMember(id='a')])
        self.assertEqual(list(timeline), snapshot)


class TestSummaries(unittest.TestCase):
    """Monthly series, milestones and plan totals."""

    def setUp(self):
        self.plan = Plan(id='p1', name='Test', monthly_premium=100,
                         individual_deductible=500, family_deductible=500,
                         individual_oop_max=1000, family_oop_max=1000, coinsurance=0.2)
        self.members = [FamilyMember(id='a', name='Alex')]
        self.timeline = [medical_event(10, 'a', 2000.0), medical_event(20, 'a', 2000.0),
                         medical_event(365, 'a', 2000.0)]
        self.progression = apply_plan(self.plan, self.timeline, self.members)

    def test_monthly_accumulation(self):
        monthly = generate_monthly_accumulation(self.progression, 100)

        self.assertEqual(len(monthly), 12)
        self.assertEqual([entry.month for entry in monthly], list(range(1, 13)))
        self.assertEqual(monthly[0].total_cost, 1000.0)
        self.assertEqual(monthly[0].events, 2)
        self.assertEqual(monthly[5].total_cost, 1000.0)
        self.assertEqual(monthly[11].events, 1)
        self.assertEqual(monthly[11].cumulative_premium, 1200)
        self.assertEqual(monthly[11].cumulative_total, 2200.0)
        totals = [entry.total_cost for entry in monthly]
        self.assertEqual(totals, sorted(totals))

    def test_milestones(self):
        milestones = generate_milestones(self.plan, self.progression)

        self.assertEqual([(m.type, m.day) for m in milestones],
                         [('family_deductible_met', 10), ('family_oop_met', 20)])
        self.assertEqual(milestones[1].amount, 1000)

    def test_no_milestones_without_limits(self):
        plan = Plan(id='p2', name='Open', coinsurance=0.5)
        progression = apply_plan(plan, self.timeline, self.members)
        self.assertEqual(generate_milestones(plan, progression), [])

    def test_no_deductible_milestone_without_deductible(self):
        plan = Plan(id='p3', name='No Deductible', coinsurance=0.2,
                    individual_oop_max=500, family_oop_max=500)
        progression = apply_plan(plan, self.timeline, self.members)
        milestones = generate_milestones(plan, progression)

        self.assertEqual([(m.type, m.day) for m in milestones], [('family_oop_met', 20)],
                         "A plan without a deductible should only report the OOP maximum")

    def test_total_uses_full_annual_premium(self):
        progression = apply_plan(self.plan, self.timeline[:1], self.members)
        result = summarize(self.plan, progression, self.members)

        self.assertEqual(progression[-1].cumulative_total, 900.0)
        self.assertEqual(result.total_with_premiums, 2000.0,
                         "Annual total should bill all 12 months even when usage ends early")

    def test_summarize_totals(self):
        result = summarize(self.plan, self.progression, self.members)

        self.assertEqual(result.annual_premium, 1200)
        self.assertEqual(result.coverage_type, 'individual')
        self.assertEqual(result.family_totals.total_out_of_pocket, 1000.0)
        self.assertEqual(result.family_totals.medical_costs, 1000.0)
        self.assertEqual(result.total_with_premiums, 2200.0)
        self.assertEqual(result.member_results['a'].total_costs, 1000.0)
        self.assertEqual(len(result.member_results['a'].events), 3)
        self.assertEqual(result.plan_details['individual_deductible'], 500)
        self.assertIsNone(result.error)

    def test_empty_progression_is_premium_only(self):
        result = summarize(self.plan, [], self.members)
        self.assertEqual(result.family_totals.total_out_of_pocket, 0.0)
        self.assertEqual(result.total_with_premiums, 1200)
        self.assertEqual(result.milestones, [])
        self.assertTrue(all(entry.total_cost == 0 for entry in result.monthly_accumulation))

    def test_zero_usage_member_upgrades_premium(self):
        members = [FamilyMember(id='a', relationship='self', age=40, primary_visits=2),
                   FamilyMember(id='b', relationship='child', age=4)]
        plan = Plan(id='p1', name='Test', monthly_premium=300, family_premium=900, primary_copay=20)
        progression = apply_plan(plan, generate_timeline(members, service_costs_for_area()), members)
        result = summarize(plan, progression, members)

        self.assertEqual(result.coverage_type, 'family')
        self.assertEqual(result.annual_premium, 10800)
        self.assertEqual(result.member_results['b'].total_costs, 0.0)
        self.assertEqual(result.member_results['b'].events, [])
        self.assertEqual(result.member_results['a'].total_costs, 40.0)


def make_result(plan_id, total, error=None):
    return PlanResult(plan_id=plan_id, plan_name=plan_id, insurer='Acme', annual_premium=0.0,
                      monthly_premium=0.0, coverage_type='individual',
                      family_totals=FamilyTotals(total_with_premiums=total), error=error)


class TestRanking(unittest.TestCase):

    def test_rank_by_total(self):
        results = rank_results({'a': make_result('a', 9000.0),
                                'b': make_result('b', 6000.0),
                                'c': make_result('c', 7500.0)})

        self.assertEqual([results[p].comparison.rank for p in 'abc'], [3, 1, 2])
        self.assertTrue(results['b'].comparison.is_best)
        self.assertTrue(results['a'].comparison.is_worst)
        self.assertEqual(results['b'].comparison.savings_vs_best, 0)
        self.assertEqual(results['a'].comparison.savings_vs_best, 3000.0)
        self.assertAlmostEqual(results['a'].comparison.percentage_more_than_best, 50.0)

    def test_ties_keep_input_order(self):
        results = rank_results({'x': make_result('x', 5000.0), 'y': make_result('y', 5000.0)})
        self.assertEqual(results['x'].comparison.rank, 1)
        self.assertEqual(results['y'].comparison.rank, 2)
        self.assertTrue(results['x'].comparison.is_best)
        self.assertFalse(results['y'].comparison.is_best)
        self.assertEqual(results['y'].comparison.savings_vs_best, 0)

    def test_tied_worst_goes_to_first_plan(self):
        results = rank_results({'low': make_result('low', 3000.0),
                                'high_a': make_result('high_a', 9000.0),
                                'high_b': make_result('high_b', 9000.0)})
        self.assertTrue(results['high_a'].comparison.is_worst)
        self.assertFalse(results['high_b'].comparison.is_worst)
        self.assertEqual(results['high_b'].comparison.rank, 3)

    def test_all_tied_first_plan_is_best_and_worst(self):
        results = rank_results({'x': make_result('x', 5000.0), 'y': make_result('y', 5000.0)})
        self.assertTrue(results['x'].comparison.is_best and results['x'].comparison.is_worst)
        self.assertFalse(results['y'].comparison.is_best or results['y'].comparison.is_worst)

    def test_single_plan_is_best_and_worst(self):
        results = rank_results({'solo': make_result('solo', 4000.0)})
        comparison = results['solo'].comparison
        self.assertTrue(comparison.is_best and comparison.is_worst)
        self.assertEqual(comparison.rank, 1)

    def test_zero_best_total(self):
        results = rank_results({'free': make_result('free', 0.0), 'paid': make_result('paid', 10.0)})
        self.assertEqual(results['paid'].comparison.percentage_more_than_best, 0.0)

    def test_failed_plans_rank_last(self):
        results = rank_results({'bad': make_result('bad', 0.0, error='boom'),
                                'ok': make_result('ok', 8000.0)})
        self.assertEqual(results['bad'].comparison.rank, 999)
        self.assertTrue(results['bad'].comparison.is_worst)
        self.assertIsNone(results['bad'].comparison.savings_vs_best)
        self.assertEqual(results['ok'].comparison.rank, 1)
        self.assertTrue(results['ok'].comparison.is_best)


class TestHealthPlanComparison(unittest.TestCase):
    """End to end calculation from raw records."""

    def test_calculate_all(self):
        comparison = HealthPlanComparison()
        results = comparison.calculate_all(sample_plans(), sample_family())

        self.assertEqual(list(results), ['gold', 'bronze'])
        self.assertEqual(len(comparison.timeline), 4 + 2 + 12 + 2 + 1)
        self.assertEqual(len(comparison.progressions['gold']), len(comparison.timeline))
        self.assertEqual(sorted(r.comparison.rank for r in results.values()), [1, 2])
        self.assertEqual(sum(r.comparison.is_best for r in results.values()), 1)

        ordered = sorted(results.values(), key=lambda r: r.comparison.rank)
        self.assertLessEqual(ordered[0].total_with_premiums, ordered[1].total_with_premiums)
        for result in results.values():
            self.assertEqual(result.coverage_type, 'family')
            member_sum = sum(m.total_costs for m in result.member_results.values())
            self.assertAlmostEqual(member_sum, result.family_totals.total_out_of_pocket)

    def test_deterministic(self):
        first = results_to_dict(calculate_all(sample_plans(), sample_family()))
        second = results_to_dict(calculate_all(sample_plans(), sample_family()))
        self.assertEqual(first, second)

    def test_results_are_json_serializable(self):
        text = json.dumps(results_to_dict(calculate_all(sample_plans(), sample_family())))
        self.assertIn('"plan_id": "gold"', text)

    def test_every_plan_sees_same_timeline(self):
        comparison = HealthPlanComparison()
        with mock.patch.object(health_plan_compare_main, 'apply_plan', wraps=apply_plan) as spy:
            comparison.calculate_all(sample_plans(), sample_family())

        self.assertEqual(spy.call_count, 2)
        for call in spy.call_args_list:
            self.assertIs(call.args[1], comparison.timeline)

    def test_failed_plan_does_not_stop_others(self):
        def failing_apply(plan, timeline, members):
            if plan.id == 'bronze':
                raise RuntimeError('simulated failure')
            return apply_plan(plan, timeline, members)

        comparison = HealthPlanComparison()
        with mock.patch.object(health_plan_compare_main, 'apply_plan', side_effect=failing_apply):
            with self.assertLogs('health_plan_compare_main', level='ERROR'):
                results = comparison.calculate_all(sample_plans(), sample_family())

        self.assertEqual(results['bronze'].error, 'simulated failure')
        self.assertEqual(results['bronze'].comparison.rank, 999)
        self.assertEqual(results['gold'].comparison.rank, 1)
        self.assertTrue(results['gold'].comparison.is_best)
        self.assertNotIn('bronze', comparison.progressions)

    def test_invalid_input_raises(self):
        plans = sample_plans()
        plans[1]['individualDeductible'] = 'unknown'
        with self.assertRaises(PlanValidationError):
            calculate_all(plans, sample_family())

    def test_zero_or_negative_n_jobs_runs_serially(self):
        for n_jobs in (0, -3):
            comparison = HealthPlanComparison(n_jobs=n_jobs)
            self.assertEqual(comparison.n_jobs, 1)
            results = comparison.calculate_all(sample_plans(), sample_family())
            self.assertEqual(sorted(r.comparison.rank for r in results.values()), [1, 2])
        self.assertEqual(HealthPlanComparison(n_jobs=-1).n_jobs, -1)

    def test_run_before_loading_raises(self):
        with self.assertRaises(ValueError):
            HealthPlanComparison().run_cost_analysis()

    def test_yearly_totals_ordered_by_rank(self):
        comparison = HealthPlanComparison()
        comparison.calculate_all(sample_plans(), sample_family())
        totals = comparison.get_yearly_totals()

        self.assertIsInstance(totals, pd.DataFrame)
        self.assertEqual(list(totals['rank']), [1, 2])
        self.assertIn('total_with_premiums', totals.columns)

    def test_printed_reports(self):
        comparison = HealthPlanComparison()
        comparison.calculate_all(sample_plans(), sample_family())

        output = io.StringIO()
        with redirect_stdout(output):
            comparison.print_cost_summaries()
            comparison.summarize_events(member_id='m2')
        text = output.getvalue()

        self.assertIn('Lowest total annual cost', text)
        self.assertIn('Gold PPO', text)
        self.assertIn('Usage timeline for member m2', text)
        self.assertNotIn('Statin', text)


class TestCommandLine(unittest.TestCase):

    def test_main_writes_audit_csv(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            scenario_path = os.path.join(tmp_dir, 'scenario.json')
            audit_path = os.path.join(tmp_dir, 'audit.csv')
            with open(scenario_path, 'w', encoding='utf-8') as handle:
                json.dump({'version': '2.0', 'plans': sample_plans(), 'familyData': sample_family()}, handle)

            output = io.StringIO()
            with redirect_stdout(output):
                exit_code = main([scenario_path, '--json', '--audit-csv', audit_path])

            self.assertEqual(exit_code, 0)
            self.assertTrue(os.path.exists(audit_path))
            self.assertIn('"gold"', output.getvalue())


if __name__ == '__main__':
    unittest.main()
