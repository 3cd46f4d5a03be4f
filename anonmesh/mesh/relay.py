"""Relay pipeline for encrypted blockchain transactions.

A node that receives a ``TransactionPacket`` over the mesh can act as its
relayer.  The pipeline pushes the still-encrypted transaction through four
stages, each provided by an external collaborator:

1. ``submit_to_rpc(tx) -> transaction_id``        RPC node accepts the bytes
2. ``verify_arcium_processing(tx_id) -> bool``    confidential compute ran
3. ``wait_for_confirmation(tx_id) -> bool``       transaction landed on-chain
4. ``claim_relay_reward(relayer_id, tx_id) -> n`` relayer is paid

The run is strictly linear: no retries, no timeouts of its own.  Every
outcome, including collaborator exceptions, comes back as a
``RelayResponse`` whose progress flags show how far the transaction got.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from anonmesh.mesh.protocol import Priority, TransactionPacket

ERR_EMPTY_RELAYER = "PeerId cannot be empty"
ERR_SUBMIT = "Failed to submit transaction to RPC"
ERR_COMPUTE = "Arcium MPC processing failed"
ERR_CONFIRM = "Transaction not confirmed on-chain"

SubmitFn = Callable[[bytes], Awaitable[str | None]]
VerifyFn = Callable[[str], Awaitable[bool]]
ConfirmFn = Callable[[str], Awaitable[bool]]
RewardFn = Callable[[str, str], Awaitable[float]]


class RelayStage(str, Enum):
    """Where a pipeline run is (or where it stopped)."""

    SUBMITTING = "submitting"
    VERIFYING_COMPUTE = "verifying_compute"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CLAIMING_REWARD = "claiming_reward"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RelayRequest:
    encrypted_transaction: bytes
    sender_id: str
    relayer_id: str
    priority: Priority = Priority.NORMAL

    @classmethod
    def from_packet(cls, packet: TransactionPacket, relayer_id: str) -> "RelayRequest":
        """Build a request for a transaction packet received over the mesh."""
        return cls(
            encrypted_transaction=packet.encrypted_transaction,
            sender_id=packet.sender_id,
            relayer_id=relayer_id,
            priority=Priority(packet.priority),
        )


@dataclass(frozen=True)
class RelayResponse:
    """Outcome of one pipeline run.

    ``stage`` is ``DONE`` on success and ``ABORTED`` otherwise;
    ``failed_stage`` names the stage that stopped an aborted run.
    """

    success: bool
    submitted: bool = False
    arcium_processing: bool = False
    on_chain: bool = False
    transaction_id: str | None = None
    reward_amount: float | None = None
    error: str | None = None
    stage: RelayStage = RelayStage.DONE
    failed_stage: RelayStage | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "submitted": self.submitted,
            "arcium_processing": self.arcium_processing,
            "on_chain": self.on_chain,
            "transaction_id": self.transaction_id,
            "reward_amount": self.reward_amount,
            "error": self.error,
            "stage": self.stage.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
        }


class _Run:
    """Progress of a single execution."""

    def __init__(self) -> None:
        self.stage = RelayStage.SUBMITTING
        self.transaction_id: str | None = None
        self.submitted = False
        self.arcium_processing = False
        self.on_chain = False

    def abort(self, error: str) -> RelayResponse:
        return RelayResponse(
            success=False,
            submitted=self.submitted,
            arcium_processing=self.arcium_processing,
            on_chain=self.on_chain,
            transaction_id=self.transaction_id,
            error=error,
            stage=RelayStage.ABORTED,
            failed_stage=self.stage,
        )


class RelayPipeline:
    """Four-stage relay of one encrypted transaction.

    Parameters
    ----------
    submit_to_rpc:
        ``async (encrypted_tx) -> transaction_id``; a falsy id means rejected.
    verify_arcium_processing:
        ``async (transaction_id) -> bool``.
    wait_for_confirmation:
        ``async (transaction_id) -> bool``.
    claim_relay_reward:
        ``async (relayer_id, transaction_id) -> amount``.  Called at most
        once per run; de-duplicating claims across runs is up to the
        collaborator.
    """

    def __init__(
        self,
        submit_to_rpc: SubmitFn,
        verify_arcium_processing: VerifyFn,
        wait_for_confirmation: ConfirmFn,
        claim_relay_reward: RewardFn,
    ):
        self._submit = submit_to_rpc
        self._verify = verify_arcium_processing
        self._confirm = wait_for_confirmation
        self._claim = claim_relay_reward

    async def execute(self, request: RelayRequest) -> RelayResponse:
        run = _Run()
        if not request.relayer_id:
            logger.warning(
                "[Relay] rejected transaction from {}: {}",
                request.sender_id, ERR_EMPTY_RELAYER,
            )
            return run.abort(ERR_EMPTY_RELAYER)

        try:
            logger.info(
                "[Relay] submitting {}-byte transaction from {} (priority={})",
                len(request.encrypted_transaction), request.sender_id,
                Priority(request.priority).value,
            )
            tx_id = await self._submit(request.encrypted_transaction)
            if not tx_id:
                logger.warning("[Relay] {}", ERR_SUBMIT)
                return run.abort(ERR_SUBMIT)
            run.transaction_id = tx_id
            run.submitted = True
            logger.info("[Relay] submitted as {}", tx_id)

            run.stage = RelayStage.VERIFYING_COMPUTE
            if not await self._verify(tx_id):
                logger.warning("[Relay] {}: {}", tx_id, ERR_COMPUTE)
                return run.abort(ERR_COMPUTE)
            run.arcium_processing = True

            run.stage = RelayStage.AWAITING_CONFIRMATION
            if not await self._confirm(tx_id):
                logger.warning("[Relay] {}: {}", tx_id, ERR_CONFIRM)
                return run.abort(ERR_CONFIRM)
            run.on_chain = True
            logger.info("[Relay] {} confirmed on-chain", tx_id)

            run.stage = RelayStage.CLAIMING_REWARD
            reward = await self._claim(request.relayer_id, tx_id)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("[Relay] aborted during {}: {}", run.stage.value, error)
            return run.abort(error)

        logger.info("[Relay] {} relayed by {}, reward {}", tx_id, request.relayer_id, reward)
        return RelayResponse(
            success=True,
            submitted=True,
            arcium_processing=True,
            on_chain=True,
            transaction_id=tx_id,
            reward_amount=reward,
            stage=RelayStage.DONE,
        )
