"""Orchestration layer: end-to-end settlement workflow."""

from trade_settlement.orchestration.settlement_workflow import (
    SettlementWorkflowState,
    run_settlement_workflow,
)

__all__ = ["SettlementWorkflowState", "run_settlement_workflow"]
