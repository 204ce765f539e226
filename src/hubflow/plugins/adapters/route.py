# src/hubflow/plugins/adapters/route.py
"""Branch routing adapter backed by the RouteEvaluator."""

from hubflow.contracts.adapter import ConfigField, FieldType
from hubflow.contracts.definition import RouteConfig
from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.results import AdapterResult, Record
from hubflow.engine.routing import RouteEvaluator
from hubflow.plugins.base import BaseAdapter
from hubflow.plugins.protocols import AdapterContext

_EVALUATOR = RouteEvaluator()


class BranchRoute(BaseAdapter):
    """Send each record to the first branch whose conditions all hold.

    Records matching no branch go to ``defaultBranch``, or are dropped when
    none is configured.
    """

    code = "route"
    step_type = StepType.ROUTE
    name = "Conditional route"
    category = AdapterCategory.ROUTING
    description = "Routes records to named branches by field conditions."
    config_model = RouteConfig
    config_fields = (
        ConfigField("branches", FieldType.ARRAY, required=True, label="Branches"),
        ConfigField("defaultBranch", FieldType.STRING, label="Default branch"),
    )
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(RouteConfig)
        decision = _EVALUATOR.partition(records, cfg)
        return AdapterResult(branches=decision.branches, dropped=len(decision.dropped), meta={"destinations": decision.counts()})
