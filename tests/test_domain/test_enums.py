"""Tests for domain enumerations."""

from __future__ import annotations

from trade_settlement.domain.enums import (
    ComplianceStatus,
    DealStatus,
    MilestoneStatus,
    TransactionLogType,
)


class TestDealStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"draft", "funded", "active", "completed", "cancelled", "disputed"}
        assert {s.value for s in DealStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(DealStatus.DRAFT, str)
        assert DealStatus.FUNDED == "funded"


class TestMilestoneStatus:
    def test_values_are_capitalized(self) -> None:
        assert [s.value for s in MilestoneStatus] == ["Pending", "Released", "Disputed"]


class TestTransactionLogType:
    def test_log_types(self) -> None:
        assert TransactionLogType.ESCROW_RELEASED == "escrow_released"
        assert TransactionLogType.CREDENTIAL_ISSUED == "credential_issued"
        assert len(TransactionLogType) == 9


class TestComplianceStatus:
    def test_kyc_complete_label(self) -> None:
        assert ComplianceStatus.KYC_COMPLETE == "KYC Complete"
