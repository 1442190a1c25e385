"""
Default Aggregate Catalog

Aggregates registered at start-up when AGGREGATES_REGISTER_CATALOG is on.
They cover the cross-sections the billing dashboards read: totals by
customer segment, year/country subtotals and quarterly breakdowns.
"""

from typing import List

from .specs import AggregateSpec, AggregationFunction, GroupingStrategy, Measure


def default_catalog() -> List[AggregateSpec]:
    """Built-in aggregate definitions"""
    return [
        AggregateSpec(
            name="billing_by_country_category",
            description="Total billed per customer country and category",
            dimensions=["customer.country", "customer.category"],
            measures=[
                Measure(name="total_billed", attribute="billing.billed_amount"),
                Measure(name="bills", attribute="billing.billed_amount", function=AggregationFunction.COUNT),
            ],
        ),
        AggregateSpec(
            name="billing_rollup_year_country",
            description="Total billed per year and country with yearly and grand totals",
            dimensions=["month.year", "customer.country"],
            measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
            strategy=GroupingStrategy.ROLLUP,
        ),
        AggregateSpec(
            name="billing_cube_year_country",
            description="Total billed for every combination of year and country subtotals",
            dimensions=["month.year", "customer.country"],
            measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
            strategy=GroupingStrategy.CUBE,
        ),
        AggregateSpec(
            name="billing_grouping_sets_year_quarter",
            description="Total billed per year and, separately, per quarter",
            dimensions=["month.year", "month.quarter_name"],
            measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
            strategy=GroupingStrategy.GROUPING_SETS,
            grouping_sets=[["month.year"], ["month.quarter_name"]],
        ),
        AggregateSpec(
            name="avg_billing_by_category",
            description="Average bill and bill count per customer category",
            dimensions=["customer.category"],
            measures=[
                Measure(name="avg_billed", attribute="billing.billed_amount", function=AggregationFunction.AVG),
                Measure(name="bills", attribute="billing.billed_amount", function=AggregationFunction.COUNT),
            ],
        ),
        AggregateSpec(
            name="bill_range_by_country",
            description="Smallest and largest bill per customer country",
            dimensions=["customer.country"],
            measures=[
                Measure(name="min_billed", attribute="billing.billed_amount", function=AggregationFunction.MIN),
                Measure(name="max_billed", attribute="billing.billed_amount", function=AggregationFunction.MAX),
            ],
        ),
    ]
