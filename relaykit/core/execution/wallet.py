"""
Wallet capability interface.

Every wallet integration implements ``AdaptedWallet`` once per wallet/VM
pairing. Optional capabilities are plain methods that a wallet may or may
not define; the executor resolves them once per execution call through
``WalletCapabilities`` and branches on their presence, never on ``vm_type``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import WalletCapabilityError
from .models import Receipt, Step, StepItem, VmType


logger = logging.getLogger(__name__)


ReplacedCallback = Callable[[str], None]
CancelledCallback = Callable[[], None]


@dataclass(frozen=True)
class EoaStatus:
    is_eoa: bool
    is_eip7702_delegated: bool = False


class AdaptedWallet(ABC):
    """
    Contract every wallet integration satisfies.

    Optional capabilities (define them on a subclass to opt in):
        async get_balance(chain_id, wallet_address, token_address=None) -> Optional[int]
        async supports_atomic_batch(chain_id) -> bool
        async handle_batch_transaction_step(chain_id, items) -> Optional[str]
        async is_eoa(chain_id) -> EoaStatus
        async sign_authorization(chain_id, contract_address, nonce=None) -> Dict[str, Any]
    """

    vm_type: VmType

    @abstractmethod
    async def get_chain_id(self) -> int:
        pass

    @abstractmethod
    async def address(self) -> str:
        pass

    @abstractmethod
    async def handle_sign_message_step(self, item: StepItem, step: Step) -> Optional[str]:
        """Sign the item's message or typed data. Raise when the VM cannot sign."""
        pass

    @abstractmethod
    async def handle_send_transaction_step(self, chain_id: int, item: StepItem, step: Step) -> Optional[str]:
        """Submit the item's transaction and return its hash."""
        pass

    @abstractmethod
    async def handle_confirm_transaction_step(
        self,
        tx_hash: str,
        chain_id: int,
        on_replaced: ReplacedCallback,
        on_cancelled: CancelledCallback,
    ) -> Receipt:
        """
        Wait for ``tx_hash`` to finalize.

        On replacement call ``on_replaced(new_hash)`` and keep waiting on the
        new hash. On cancellation call ``on_cancelled()`` and raise.
        """
        pass

    @abstractmethod
    async def switch_chain(self, chain_id: int) -> None:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(vm={self.vm_type.value})"


OPTIONAL_CAPABILITIES = (
    "get_balance",
    "supports_atomic_batch",
    "handle_batch_transaction_step",
    "is_eoa",
    "sign_authorization",
)


@dataclass(frozen=True)
class WalletCapabilities:
    """Optional capability slots, resolved once per execution call."""
    get_balance: Optional[Callable[..., Awaitable[Optional[int]]]] = None
    supports_atomic_batch: Optional[Callable[[int], Awaitable[bool]]] = None
    handle_batch_transaction_step: Optional[Callable[[int, List[StepItem]], Awaitable[Optional[str]]]] = None
    is_eoa: Optional[Callable[[int], Awaitable[EoaStatus]]] = None
    sign_authorization: Optional[Callable[..., Awaitable[Dict[str, Any]]]] = None

    @classmethod
    def resolve(cls, wallet: AdaptedWallet) -> "WalletCapabilities":
        slots = {}
        for name in OPTIONAL_CAPABILITIES:
            candidate = getattr(wallet, name, None)
            slots[name] = candidate if callable(candidate) else None
        capabilities = cls(**slots)
        logger.debug(f"Resolved wallet capabilities for {wallet!r}: {capabilities.names}")
        return capabilities

    @property
    def names(self) -> List[str]:
        return [name for name in OPTIONAL_CAPABILITIES if getattr(self, name) is not None]

    @property
    def can_batch(self) -> bool:
        return self.supports_atomic_batch is not None and self.handle_batch_transaction_step is not None

    async def atomic_batch_supported(self, chain_id: int) -> bool:
        """Ask the wallet; a failing query counts as unsupported."""
        if not self.can_batch:
            return False
        try:
            return bool(await self.supports_atomic_batch(chain_id))
        except Exception as exc:
            logger.warning(f"supports_atomic_batch query failed on chain {chain_id}: {exc}")
            return False

    def require(self, name: str) -> Callable[..., Awaitable[Any]]:
        slot = getattr(self, name, None)
        if slot is None:
            raise WalletCapabilityError(f"Wallet does not implement {name}")
        return slot
