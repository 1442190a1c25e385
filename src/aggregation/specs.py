"""
Aggregate Specifications

Declarative description of one materialized aggregate: which dimensions to
group by, which measures to compute, and which grouping strategy decides the
subtotal tiers. Strategies are expanded into an explicit list of dimension
subsets that a single grouping routine consumes.
"""

from enum import Enum
from itertools import combinations
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field


GROUPING_ID = "grouping_id"


class AggregationFunction(str, Enum):
    """Measure aggregation functions"""
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


class GroupingStrategy(str, Enum):
    """How subtotal tiers are derived from the dimension list"""
    FLAT = "flat"
    ROLLUP = "rollup"
    CUBE = "cube"
    GROUPING_SETS = "grouping_sets"


class Measure(BaseModel):
    """An aggregated fact attribute"""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100, description="Output column name")
    attribute: str = Field(..., description="Fact attribute path, e.g. billing.billed_amount")
    function: AggregationFunction = Field(default=AggregationFunction.SUM)


class AggregateSpec(BaseModel):
    """
    Aggregate definition.

    Example:
        AggregateSpec(
            name="billing_by_country_year",
            dimensions=["customer.country", "month.year"],
            measures=[Measure(name="total_billed", attribute="billed_amount")],
        )
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z][a-z0-9_]*$")
    description: Optional[str] = None
    dimensions: List[str] = Field(default_factory=list)
    measures: List[Measure] = Field(..., min_length=1)
    strategy: GroupingStrategy = Field(default=GroupingStrategy.FLAT)
    grouping_sets: Optional[List[List[str]]] = Field(
        default=None,
        description="Explicit dimension subsets for GROUPING_SETS; include [] for a grand total",
    )

    @property
    def spec_id(self) -> str:
        return self.name

    @property
    def dimension_names(self) -> List[str]:
        """Output column names of the grouping dimensions"""
        return [dimension_name(path) for path in self.dimensions]

    def source_paths(self) -> List[str]:
        """Attribute paths the source has to return for this spec"""
        paths = list(self.dimensions)
        for measure in self.measures:
            if measure.attribute not in paths:
                paths.append(measure.attribute)
        return paths

    def expand_grouping_sets(self) -> List[Tuple[str, ...]]:
        """
        Enumerate the dimension subsets this spec materializes.

        Subsets are tuples of output names in declaration order.
        FLAT -> the full tuple; ROLLUP -> every prefix down to the grand total;
        CUBE -> all 2^n subsets; GROUPING_SETS -> exactly the listed subsets.
        """
        names = self.dimension_names

        if self.strategy is GroupingStrategy.FLAT:
            return [tuple(names)]

        if self.strategy is GroupingStrategy.ROLLUP:
            return [tuple(names[:i]) for i in range(len(names), -1, -1)]

        if self.strategy is GroupingStrategy.CUBE:
            subsets = []
            for size in range(len(names), -1, -1):
                subsets.extend(combinations(names, size))
            return sorted(subsets, key=self.grouping_id)

        return [self.normalize_subset(subset) for subset in self.grouping_sets or []]

    def normalize_subset(self, subset: Sequence[str]) -> Tuple[str, ...]:
        """Map paths or names to output names, ordered like the dimension list"""
        wanted = {dimension_name(item) for item in subset}
        return tuple(name for name in self.dimension_names if name in wanted)

    def grouping_id(self, subset: Sequence[str]) -> int:
        """
        SQL GROUPING() style bitmask: one bit per dimension, first dimension is
        the most significant bit, a set bit means the dimension is rolled up.
        """
        present = set(subset)
        names = self.dimension_names
        width = len(names)
        return sum(1 << (width - 1 - i) for i, name in enumerate(names) if name not in present)

    def absent_dimensions(self, grouping_id: int) -> List[str]:
        """Dimensions rolled up in the tier identified by `grouping_id`"""
        width = len(self.dimensions)
        return [
            name for i, name in enumerate(self.dimension_names)
            if grouping_id & (1 << (width - 1 - i))
        ]


def dimension_name(path: str) -> str:
    """Output column name for an attribute path"""
    return path.rsplit(".", 1)[-1]
