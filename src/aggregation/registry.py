"""
Aggregate Spec Registry

Validates aggregate definitions against the star schema and keeps the set of
registered specs. Read-heavy and append-mostly; removal is supported so an
aggregate can be retired together with its artifact.
"""

from typing import Dict, List, Optional

import structlog

from src.warehouse.schema import SchemaError, StarSchema
from .exceptions import InvalidSpecError, NotFoundError
from .specs import GROUPING_ID, AggregateSpec, GroupingStrategy, dimension_name

logger = structlog.get_logger(__name__)

# 2^10 tiers is already far more than any dashboard reads
MAX_CUBE_DIMENSIONS = 10


class AggregateRegistry:
    """
    Registered aggregate specs keyed by spec id.

    Example:
        registry = AggregateRegistry(billing_schema())
        spec_id = registry.register(spec)
        spec = registry.get(spec_id)
    """

    def __init__(self, schema: StarSchema):
        self.schema = schema
        self._specs: Dict[str, AggregateSpec] = {}

    def __contains__(self, spec_id: str) -> bool:
        return spec_id in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def register(self, spec: AggregateSpec) -> str:
        """
        Validate and register a spec.

        Registering an identical definition again is a no-op.

        Raises:
            InvalidSpecError: The definition cannot be materialized, or a
                different definition already uses the name
        """
        self.validate(spec)

        existing = self._specs.get(spec.spec_id)
        if existing is not None:
            if existing == spec:
                return spec.spec_id
            raise InvalidSpecError("A different spec is already registered under this name", spec.spec_id)

        self._specs[spec.spec_id] = spec
        logger.info(
            "Aggregate spec registered",
            spec_id=spec.spec_id,
            strategy=spec.strategy.value,
            dimensions=spec.dimensions,
            measures=[m.name for m in spec.measures],
        )
        return spec.spec_id

    def get(self, spec_id: str) -> AggregateSpec:
        """
        Raises:
            NotFoundError: Unknown spec id
        """
        spec = self._specs.get(spec_id)
        if spec is None:
            raise NotFoundError("Aggregate spec is not registered", spec_id)
        return spec

    def find(self, spec_id: str) -> Optional[AggregateSpec]:
        """Registered definition, or None"""
        return self._specs.get(spec_id)

    def remove(self, spec_id: str) -> AggregateSpec:
        """
        Raises:
            NotFoundError: Unknown spec id
        """
        spec = self.get(spec_id)
        del self._specs[spec_id]
        logger.info("Aggregate spec removed", spec_id=spec_id)
        return spec

    def list(self) -> List[AggregateSpec]:
        return [self._specs[key] for key in sorted(self._specs)]

    def validate(self, spec: AggregateSpec) -> None:
        """
        Check a spec against the schema.

        Raises:
            InvalidSpecError: With every problem found, joined into one message
        """
        problems: List[str] = []

        # Dimensions: reachable through the join graph, unique output names
        seen_names = set()
        for path in spec.dimensions:
            try:
                self.schema.resolve(path)
            except SchemaError as e:
                problems.append(f"dimension {path}: {e}")
            name = dimension_name(path)
            if name in seen_names:
                problems.append(f"dimension {path}: output name '{name}' is used twice")
            seen_names.add(name)

        # Measures: numeric fact attributes, unique output names
        for measure in spec.measures:
            try:
                resolved = self.schema.resolve(measure.attribute)
            except SchemaError as e:
                problems.append(f"measure {measure.name}: {e}")
            else:
                if not resolved.on_fact:
                    problems.append(
                        f"measure {measure.name}: '{measure.attribute}' is a dimension attribute, "
                        f"measures must reference the fact table"
                    )
                elif not resolved.attribute.is_numeric:
                    problems.append(
                        f"measure {measure.name}: {measure.function.value} is not applicable to "
                        f"{resolved.attribute.type.value} attribute '{measure.attribute}'"
                    )
            if measure.name in seen_names:
                problems.append(f"measure {measure.name}: output name is already used")
            seen_names.add(measure.name)

        if GROUPING_ID in seen_names:
            problems.append(f"'{GROUPING_ID}' is reserved")

        # Strategy specific checks
        if spec.strategy is GroupingStrategy.GROUPING_SETS:
            problems.extend(self._grouping_set_problems(spec))
        elif spec.grouping_sets is not None:
            problems.append(f"grouping_sets is only valid with the {GroupingStrategy.GROUPING_SETS.value} strategy")

        if spec.strategy is not GroupingStrategy.FLAT and not spec.dimensions:
            problems.append(f"{spec.strategy.value} needs at least one dimension")

        if spec.strategy is GroupingStrategy.CUBE and len(spec.dimensions) > MAX_CUBE_DIMENSIONS:
            problems.append(f"cube over {len(spec.dimensions)} dimensions exceeds the limit of {MAX_CUBE_DIMENSIONS}")

        if problems:
            logger.warning("Aggregate spec rejected", spec_id=spec.spec_id, problems=problems)
            raise InvalidSpecError("; ".join(problems), spec.spec_id)

    @staticmethod
    def _grouping_set_problems(spec: AggregateSpec) -> List[str]:
        if not spec.grouping_sets:
            return ["grouping_sets must list at least one dimension subset"]

        problems = []
        declared = set(spec.dimension_names)
        seen = set()
        for subset in spec.grouping_sets:
            unknown = [item for item in subset if dimension_name(item) not in declared]
            if unknown:
                problems.append(f"grouping set {subset} references undeclared dimensions {unknown}")
                continue
            normalized = spec.normalize_subset(subset)
            if len(normalized) != len(subset):
                problems.append(f"grouping set {subset} repeats a dimension")
            if normalized in seen:
                problems.append(f"grouping set {subset} is listed more than once")
            seen.add(normalized)
        return problems
