"""
Test Maker-Checker Operations
Initiation, approval, rejection and background execution of synchronous kinds
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database import async_managed_session
from models import CustodyStatus, Operation, OperationStatus, OperationType
from services.audit_service import AuditEvent
from services.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from tests.fixtures import link_and_approve, mint_asset, mint_params, task_status
from utils.background_task_runner import TaskState


async def _reload(operation_id):
    async with async_managed_session() as session:
        return await session.get(Operation, operation_id)


async def _approve_and_wait(engine, operation_id, checker="checker-1"):
    approved = await engine.operations.approve_operation(operation_id, checker)
    await engine.runner.wait_idle(timeout=10)
    return approved


class TestInitiation:
    """One live operation per custody record"""

    @pytest.mark.asyncio
    async def test_initiate_creates_pending_checker_with_offchain_hash(self, engine):
        record = await link_and_approve(engine)

        operation = await engine.operations.initiate_mint_operation(record.id, mint_params(symbol="ala1"), "maker-1")

        assert operation.status == OperationStatus.PENDING_CHECKER.value
        assert operation.offchain_tx_hash.startswith("0x")
        assert len(operation.offchain_tx_hash) == 66
        assert operation.payload["token_symbol"] == "ALA1"
        assert operation.payload["total_supply"] == "1000"

        events = await engine.audit.list_events(operation_id=operation.id)
        assert [e.event_type for e in events] == [AuditEvent.OPERATION_CREATED]

    @pytest.mark.asyncio
    async def test_second_live_operation_is_a_conflict(self, engine):
        record = await link_and_approve(engine)
        first = await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")

        with pytest.raises(ConflictError) as exc_info:
            await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-2")
        assert exc_info.value.details["operation_id"] == first.id

    @pytest.mark.asyncio
    async def test_rejected_operation_frees_the_record(self, engine):
        record = await link_and_approve(engine)
        first = await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")

        rejected = await engine.operations.reject_operation(first.id, "checker-1", "wrong supply")
        assert rejected.status == OperationStatus.REJECTED.value
        assert rejected.rejection_reason == "wrong supply"

        second = await engine.operations.initiate_mint_operation(record.id, mint_params(total_supply="500"), "maker-1")
        assert second.status == OperationStatus.PENDING_CHECKER.value

    @pytest.mark.asyncio
    async def test_unique_index_blocks_concurrent_live_rows(self, engine):
        record = await link_and_approve(engine)

        with pytest.raises(IntegrityError):
            async with async_managed_session() as session:
                for maker in ("maker-1", "maker-2"):
                    session.add(Operation(
                        operation_type=OperationType.FREEZE.value,
                        status=OperationStatus.PENDING_CHECKER.value,
                        custody_record_id=record.id,
                        payload={},
                        initiated_by=maker,
                    ))
                await session.flush()

    @pytest.mark.asyncio
    async def test_mint_parameters_are_validated(self, engine):
        record = await link_and_approve(engine)

        params = mint_params()
        del params["token_name"]
        with pytest.raises(ValidationError) as exc_info:
            await engine.operations.initiate_mint_operation(record.id, params, "maker-1")
        assert exc_info.value.details["missing"] == ["token_name"]

        with pytest.raises(ValidationError):
            await engine.operations.initiate_mint_operation(record.id, mint_params(total_supply="0"), "maker-1")
        with pytest.raises(ValidationError):
            await engine.operations.initiate_mint_operation(record.id, {**mint_params(), "decimals": 40}, "maker-1")
        with pytest.raises(ValidationError):
            await engine.operations.initiate_mint_operation(record.id, mint_params(asset_id="OTHER"), "maker-1")

    @pytest.mark.asyncio
    async def test_mint_requires_linked_record(self, engine):
        record = await engine.custody.link_asset("A1", "tenant-1", "issuer-1")

        with pytest.raises(BadRequestError):
            await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")

    @pytest.mark.asyncio
    async def test_failed_mint_is_retried_directly(self, engine, provider):
        record = await link_and_approve(engine)
        provider.next_mint_script = [task_status("FAILED", substatus="DEPLOY_REVERTED")]
        await mint_asset(engine, record.id)
        assert (await engine.custody.get_custody_record(record.id)).status == CustodyStatus.FAILED.value

        retry = await mint_asset(engine, record.id)

        assert (await _reload(retry.id)).status == OperationStatus.EXECUTED.value
        minted = await engine.custody.get_custody_record(record.id)
        assert minted.status == CustodyStatus.MINTED.value
        assert minted.token_id == "task-3"

    @pytest.mark.asyncio
    async def test_record_failed_after_minting_cannot_mint_again(self, engine, provider):
        record = await link_and_approve(engine)
        await mint_asset(engine, record.id)
        provider.next_tx_script = [task_status("FAILED")]
        burn = await engine.operations.initiate_operation("BURN", record.id, {"amount": "10"}, "maker-1")
        await _approve_and_wait(engine, burn.id)
        assert (await engine.custody.get_custody_record(record.id)).status == CustodyStatus.FAILED.value

        with pytest.raises(BadRequestError):
            await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")

    @pytest.mark.asyncio
    async def test_unknown_type_and_tenant_mismatch(self, engine):
        record = await link_and_approve(engine)

        with pytest.raises(ValidationError):
            await engine.operations.initiate_operation("TELEPORT", record.id, {}, "maker-1")
        with pytest.raises(NotFoundError):
            await engine.operations.initiate_operation("FREEZE", record.id, {}, "maker-1", tenant_id="tenant-2")


class TestApproval:
    """Maker-checker separation"""

    @pytest.mark.asyncio
    async def test_maker_cannot_approve_own_operation(self, engine):
        record = await link_and_approve(engine)
        operation = await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")

        with pytest.raises(ForbiddenError):
            await engine.operations.approve_operation(operation.id, "maker-1")

        reloaded = await _reload(operation.id)
        assert reloaded.status == OperationStatus.PENDING_CHECKER.value

    @pytest.mark.asyncio
    async def test_bypass_allows_same_identity(self, engine):
        record = await link_and_approve(engine)
        operation = await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")

        approved = await engine.operations.approve_operation(operation.id, "maker-1", bypass_maker_checker=True)
        await engine.runner.wait_idle(timeout=10)

        assert approved.status == OperationStatus.APPROVED.value
        events = await engine.audit.list_events(operation_id=operation.id, event_type=AuditEvent.OPERATION_APPROVED)
        assert events[0].details["checker_identity"] == "maker-1"
        assert events[0].details["bypass_maker_checker"] is True

    @pytest.mark.asyncio
    async def test_approve_returns_before_execution(self, engine, notifier):
        record = await link_and_approve(engine)
        operation = await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")

        approved = await engine.operations.approve_operation(operation.id, "checker-1")

        assert approved.status == OperationStatus.APPROVED.value
        assert approved.approved_by == "checker-1"
        assert "operation.approved" in notifier.names()
        await engine.runner.wait_idle(timeout=10)

    @pytest.mark.asyncio
    async def test_stranded_approved_operation_is_resubmitted(self, engine):
        record = await link_and_approve(engine)
        await mint_asset(engine, record.id)
        operation = await engine.operations.initiate_operation("FREEZE", record.id, {"reason": "audit"}, "maker-1")
        async with async_managed_session() as session:
            row = await session.get(Operation, operation.id)
            row.status = OperationStatus.APPROVED.value
            row.approved_by = "checker-1"

        again = await engine.operations.approve_operation(operation.id, "checker-2")
        await engine.runner.wait_idle(timeout=10)

        assert again.status == OperationStatus.APPROVED.value
        assert (await _reload(operation.id)).status == OperationStatus.EXECUTED.value
        approvals = await engine.audit.list_events(operation_id=operation.id, event_type=AuditEvent.OPERATION_APPROVED)
        assert approvals == []

    @pytest.mark.asyncio
    async def test_finished_operation_cannot_be_approved_again(self, engine):
        record = await link_and_approve(engine)
        operation = await mint_asset(engine, record.id)

        with pytest.raises(BadRequestError):
            await engine.operations.approve_operation(operation.id, "checker-2")


class TestExecution:
    """Synchronous kinds and dispatch failures"""

    @pytest.mark.asyncio
    async def test_link_asset_operation_provisions_vault(self, engine):
        record = await engine.custody.link_asset("A1", "tenant-1", "issuer-1")
        operation = await engine.operations.initiate_operation("LINK_ASSET", record.id, {}, "maker-1")

        await _approve_and_wait(engine, operation.id)

        reloaded = await engine.custody.get_custody_record(record.id)
        assert reloaded.status == CustodyStatus.LINKED.value
        assert reloaded.approved_by == "checker-1"
        assert (await _reload(operation.id)).status == OperationStatus.EXECUTED.value

    @pytest.mark.asyncio
    async def test_freeze_then_unfreeze(self, engine):
        record = await link_and_approve(engine)
        await mint_asset(engine, record.id)

        freeze = await engine.operations.initiate_operation("FREEZE", record.id, {"reason": "court order"}, "maker-1")
        await _approve_and_wait(engine, freeze.id)
        frozen = await engine.custody.get_custody_record(record.id)
        assert frozen.status == CustodyStatus.FROZEN.value
        assert frozen.frozen_at is not None

        unfreeze = await engine.operations.initiate_operation("UNFREEZE", record.id, {}, "maker-1")
        await _approve_and_wait(engine, unfreeze.id)
        unfrozen = await engine.custody.get_custody_record(record.id)
        assert unfrozen.status == CustodyStatus.MINTED.value
        assert unfrozen.frozen_at is None

        freeze_events = await engine.audit.list_events(custody_record_id=record.id, event_type=AuditEvent.TOKEN_FROZEN)
        unfreeze_events = await engine.audit.list_events(custody_record_id=record.id, event_type=AuditEvent.TOKEN_UNFROZEN)
        assert len(freeze_events) == 1
        assert len(unfreeze_events) == 1

    @pytest.mark.asyncio
    async def test_withdrawal_transfer_marks_record_withdrawn(self, engine, provider):
        record = await link_and_approve(engine)
        await mint_asset(engine, record.id)

        transfer = await engine.operations.initiate_operation(
            "TRANSFER", record.id, {"amount": "1000", "to_vault_id": "ext-9", "withdrawal": True}, "maker-1"
        )
        await _approve_and_wait(engine, transfer.id)

        executed = await _reload(transfer.id)
        assert executed.status == OperationStatus.EXECUTED.value
        tx_id = [c for c in provider.calls if c[0] == "transfer"][-1][-1]
        assert executed.tx_hash == tx_id

        withdrawn = await engine.custody.get_custody_record(record.id)
        assert withdrawn.status == CustodyStatus.WITHDRAWN.value
        assert withdrawn.withdrawn_at is not None

    @pytest.mark.asyncio
    async def test_transfer_without_destination_fails_operation(self, engine):
        record = await link_and_approve(engine)
        await mint_asset(engine, record.id)

        transfer = await engine.operations.initiate_operation("TRANSFER", record.id, {"amount": "5"}, "maker-1")
        await _approve_and_wait(engine, transfer.id)

        failed = await _reload(transfer.id)
        assert failed.status == OperationStatus.FAILED.value
        assert "to_vault_id" in failed.failure_reason
        assert failed.failure_details["error_type"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_provider_error_marks_operation_failed(self, engine, provider, notifier):
        record = await link_and_approve(engine)

        async def broken_issue(vault_id, token_config):
            raise RuntimeError("provider down")
        provider.issue_token = broken_issue

        operation = await engine.operations.initiate_mint_operation(record.id, mint_params(), "maker-1")
        await _approve_and_wait(engine, operation.id)

        failed = await _reload(operation.id)
        assert failed.status == OperationStatus.FAILED.value
        assert failed.failure_reason == "provider down"
        assert "operation.failed" in notifier.names()

        events = await engine.audit.list_events(operation_id=operation.id, event_type=AuditEvent.OPERATION_FAILED)
        assert len(events) == 1

        outcome = engine.runner.last_outcome(engine.operations.execution_task_name(operation.id))
        assert outcome.state == TaskState.SUCCEEDED
        assert outcome.result is None

        unchanged = await engine.custody.get_custody_record(record.id)
        assert unchanged.status == CustodyStatus.LINKED.value

    @pytest.mark.asyncio
    async def test_execute_requires_approved(self, engine):
        record = await link_and_approve(engine)
        operation = await engine.operations.initiate_operation("FREEZE", record.id, {}, "maker-1")

        with pytest.raises(BadRequestError):
            await engine.operations.execute_operation(operation.id)


class TestReads:
    """Operation details and listing"""

    @pytest.mark.asyncio
    async def test_details_include_record_and_execution_state(self, engine):
        record = await link_and_approve(engine)
        operation = await mint_asset(engine, record.id)

        details = await engine.operations.get_operation_details(operation.id)

        assert details["status"] == OperationStatus.EXECUTED.value
        assert details["custody_record"]["asset_id"] == "A1"
        assert details["execution_state"] == "succeeded"

        with pytest.raises(NotFoundError):
            await engine.operations.get_operation_details(operation.id, tenant_id="tenant-2")

    @pytest.mark.asyncio
    async def test_list_filters(self, engine):
        first = await link_and_approve(engine, "A1")
        second = await link_and_approve(engine, "B1", tenant_id="tenant-2")
        await engine.operations.initiate_mint_operation(first.id, mint_params("A1"), "maker-1")
        await engine.operations.initiate_operation("FREEZE", second.id, {}, "maker-1")

        operations, total = await engine.operations.list_operations(tenant_id="tenant-1")
        assert total == 1
        assert operations[0].operation_type == OperationType.MINT.value

        _, pending_total = await engine.operations.list_operations(status="PENDING_CHECKER")
        assert pending_total == 2

        with pytest.raises(ValidationError):
            await engine.operations.list_operations(operation_type="TELEPORT")

        async with async_managed_session() as session:
            rows = (await session.execute(select(Operation))).scalars().all()
        assert len(rows) == 2
