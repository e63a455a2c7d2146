"""
Wallet Registry Module

Admin-managed deposit wallets. Users pick an active wallet when submitting a
deposit or withdrawal; the wallet's minimum/maximum bounds constrain deposit
amounts. Bounds of 0/0 (or unset) mean "no limit".
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .amounts import Page, paginate, parse_amount
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, PersistenceError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class Chain(Enum):
    """Supported networks"""
    ETHEREUM = "Ethereum"
    TRON = "Tron"
    BSC = "Binance Smart Chain"
    POLYGON = "Polygon"
    SOLANA = "Solana"
    BITCOIN = "Bitcoin"
    ARBITRUM = "Arbitrum"
    OPTIMISM = "Optimism"
    AVALANCHE = "Avalanche"


@dataclass
class Wallet(StorageRecord):
    """Deposit target published to users"""
    wallet_address: str
    chain: Chain
    token: str
    qr_image_key: str
    created_by: str
    is_active: bool = True
    description: Optional[str] = None
    network_fee: Optional[Decimal] = None
    minimum_amount: Decimal = Decimal('0')
    maximum_amount: Decimal = Decimal('0')
    priority: int = 0
    tags: List[str] = field(default_factory=list)
    updated_by: Optional[str] = None

    @property
    def has_amount_limits(self) -> bool:
        return not (self.minimum_amount == 0 and self.maximum_amount == 0)

    def accepts_amount(self, amount: Decimal) -> bool:
        if not self.has_amount_limits:
            return True
        return self.minimum_amount <= amount <= self.maximum_amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Wallet':
        data = cls._parse_timestamps(data)
        data['chain'] = Chain(data['chain'])
        data['minimum_amount'] = Decimal(str(data.get('minimum_amount') or '0'))
        data['maximum_amount'] = Decimal(str(data.get('maximum_amount') or '0'))
        if data.get('network_fee') is not None:
            data['network_fee'] = Decimal(str(data['network_fee']))
        return cls(**data)


def _parse_chain(chain: Any) -> Chain:
    if isinstance(chain, Chain):
        return chain
    try:
        return Chain(chain)
    except ValueError:
        supported = ", ".join(c.value for c in Chain)
        raise ValidationError(f"Unsupported chain {chain!r}; expected one of: {supported}")


def _parse_bounds(minimum: Any, maximum: Any) -> Dict[str, Decimal]:
    minimum = parse_amount(minimum or 0, "minimum amount", allow_zero=True)
    maximum = parse_amount(maximum or 0, "maximum amount", allow_zero=True)
    if maximum != 0 and minimum > maximum:
        raise ValidationError(
            f"Minimum amount {minimum} cannot exceed maximum amount {maximum}"
        )
    return {"minimum_amount": minimum, "maximum_amount": maximum}


class WalletRegistry:
    """
    Manages deposit wallets
    """

    UPDATABLE_FIELDS = {
        "wallet_address", "chain", "token", "qr_image_key", "description",
        "network_fee", "minimum_amount", "maximum_amount", "priority", "tags"
    }

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "wallets"
        self.logger = get_logger("staking.wallets")

    def create_wallet(
        self,
        wallet_address: str,
        chain: Any,
        token: str,
        qr_image_key: str,
        created_by: str,
        description: Optional[str] = None,
        network_fee: Any = None,
        minimum_amount: Any = 0,
        maximum_amount: Any = 0,
        priority: int = 0,
        tags: Optional[List[str]] = None
    ) -> Wallet:
        """
        Register a new deposit wallet

        Args:
            wallet_address: On-chain address users send funds to
            chain: Network name (see Chain)
            token: Token symbol, e.g. USDT
            qr_image_key: Object-storage key of the address QR image
            created_by: Admin creating the wallet
            description: Free text shown to users
            network_fee: Informational network fee
            minimum_amount: Lower deposit bound (0 with maximum 0 = no limit)
            maximum_amount: Upper deposit bound
            priority: Higher priorities are listed first
            tags: Free-form labels

        Returns:
            Created Wallet
        """
        if not wallet_address or not wallet_address.strip():
            raise ValidationError("Wallet address is required")
        if not token or not token.strip():
            raise ValidationError("Token is required")
        if not qr_image_key:
            raise ValidationError("QR image is required")

        bounds = _parse_bounds(minimum_amount, maximum_amount)
        now = datetime.now(timezone.utc)
        wallet = Wallet(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            wallet_address=wallet_address.strip(),
            chain=_parse_chain(chain),
            token=token.strip(),
            qr_image_key=qr_image_key,
            created_by=created_by,
            description=description,
            network_fee=(
                parse_amount(network_fee, "network fee", allow_zero=True)
                if network_fee is not None else None
            ),
            priority=int(priority or 0),
            tags=[t.strip() for t in (tags or []) if t and t.strip()],
            **bounds
        )

        with self.storage.atomic():
            self.storage.insert(self.table_name, wallet.id, wallet.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.WALLET_CREATED,
                entity_type="wallet",
                entity_id=wallet.id,
                user_id=created_by,
                metadata={
                    "chain": wallet.chain,
                    "token": wallet.token,
                    "wallet_address": wallet.wallet_address
                }
            )

        log_action(
            self.logger, "info", "Wallet created",
            user_id=created_by, action="create_wallet", resource=f"wallet:{wallet.id}",
            extra={"chain": wallet.chain.value, "token": wallet.token}
        )
        return wallet

    def get_wallet(self, wallet_id: str) -> Wallet:
        """Get wallet by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.table_name, wallet_id)
        if not data:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        return Wallet.from_dict(data)

    def get_active_wallet(self, wallet_id: str) -> Wallet:
        """Get a wallet users may currently transact against"""
        wallet = self.get_wallet(wallet_id)
        if not wallet.is_active:
            raise ValidationError(f"Wallet {wallet_id} is not active")
        return wallet

    def check_amount(self, wallet: Wallet, amount: Decimal) -> None:
        """Raise ValidationError when a deposit amount falls outside the wallet bounds"""
        if not wallet.accepts_amount(amount):
            raise ValidationError(
                f"Amount must be between {wallet.minimum_amount} and {wallet.maximum_amount}"
            )

    def update_wallet(self, wallet_id: str, updated_by: str, **changes) -> Wallet:
        """Update editable wallet fields"""
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update wallet fields: {', '.join(sorted(unknown))}")

        wallet = self.get_wallet(wallet_id)
        updates: Dict[str, Any] = {k: v for k, v in changes.items() if v is not None}

        if "chain" in updates:
            updates["chain"] = _parse_chain(updates["chain"])
        if "minimum_amount" in updates or "maximum_amount" in updates:
            updates.update(_parse_bounds(
                updates.get("minimum_amount", wallet.minimum_amount),
                updates.get("maximum_amount", wallet.maximum_amount)
            ))
        if "network_fee" in updates:
            updates["network_fee"] = parse_amount(updates["network_fee"], "network fee", allow_zero=True)
        updates["updated_by"] = updated_by

        return self._update(wallet_id, updates, AuditEventType.WALLET_UPDATED, updated_by)

    def activate(self, wallet_id: str, updated_by: str) -> Wallet:
        return self._update(
            wallet_id, {"is_active": True, "updated_by": updated_by},
            AuditEventType.WALLET_ACTIVATED, updated_by
        )

    def deactivate(self, wallet_id: str, updated_by: str) -> Wallet:
        return self._update(
            wallet_id, {"is_active": False, "updated_by": updated_by},
            AuditEventType.WALLET_DEACTIVATED, updated_by
        )

    def _update(
        self,
        wallet_id: str,
        updates: Dict[str, Any],
        event_type: AuditEventType,
        updated_by: str
    ) -> Wallet:
        with self.storage.atomic():
            self.get_wallet(wallet_id)
            updated = self.storage.compare_and_set(self.table_name, wallet_id, {}, updates)
            if updated is None:
                raise PersistenceError(f"Wallet {wallet_id} vanished during update")

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="wallet",
                entity_id=wallet_id,
                user_id=updated_by,
                metadata={k: v for k, v in updates.items() if k != "updated_by"}
            )

        log_action(
            self.logger, "info", f"Wallet {event_type.value.split('_', 1)[1]}",
            user_id=updated_by, action=event_type.value, resource=f"wallet:{wallet_id}"
        )
        return Wallet.from_dict(updated)

    def list_wallets(
        self,
        chain: Any = None,
        token: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        limit: int = 10
    ) -> Page[Wallet]:
        """
        List wallets, highest priority first, then newest

        Token matching is a case-insensitive substring match.
        """
        filters: Dict[str, Any] = {}
        if chain is not None:
            filters["chain"] = _parse_chain(chain)
        if is_active is not None:
            filters["is_active"] = is_active

        wallets = [Wallet.from_dict(row) for row in self.storage.find(self.table_name, filters)]
        if token:
            wallets = [w for w in wallets if token.lower() in w.token.lower()]

        wallets.sort(key=lambda w: (w.priority, w.created_at), reverse=True)
        return paginate(wallets, page, limit)

    def delete_wallet(self, wallet_id: str, deleted_by: str) -> Wallet:
        """Hard-delete a wallet. Past transactions keep their wallet_id."""
        with self.storage.atomic():
            wallet = self.get_wallet(wallet_id)
            self.storage.delete(self.table_name, wallet_id)
            self.audit_trail.log_event(
                event_type=AuditEventType.WALLET_DELETED,
                entity_type="wallet",
                entity_id=wallet_id,
                user_id=deleted_by,
                metadata={
                    "chain": wallet.chain,
                    "token": wallet.token,
                    "wallet_address": wallet.wallet_address
                }
            )

        log_action(
            self.logger, "info", "Wallet deleted",
            user_id=deleted_by, action="delete_wallet", resource=f"wallet:{wallet_id}"
        )
        return wallet

    def _active_wallets(self, chain: Any = None) -> List[Wallet]:
        filters: Dict[str, Any] = {"is_active": True}
        if chain is not None:
            filters["chain"] = _parse_chain(chain)
        return [Wallet.from_dict(row) for row in self.storage.find(self.table_name, filters)]

    def available_chains(self) -> List[Dict[str, Any]]:
        """Chains with at least one active wallet, most wallets first"""
        grouped: Dict[Chain, List[Wallet]] = {}
        for wallet in self._active_wallets():
            grouped.setdefault(wallet.chain, []).append(wallet)

        chains = [
            {
                "chain": chain.value,
                "wallet_count": len(wallets),
                "available_tokens": sorted({w.token for w in wallets})
            }
            for chain, wallets in grouped.items()
        ]
        chains.sort(key=lambda c: (-c["wallet_count"], c["chain"]))
        return chains

    def available_tokens(self, chain: Any = None) -> List[Dict[str, Any]]:
        """
        Tokens with at least one active wallet, most wallets first

        average_network_fee counts a missing fee as zero.
        """
        grouped: Dict[str, List[Wallet]] = {}
        for wallet in self._active_wallets(chain):
            grouped.setdefault(wallet.token, []).append(wallet)

        tokens = []
        for token, wallets in grouped.items():
            total_fee = sum((w.network_fee or Decimal('0') for w in wallets), Decimal('0'))
            tokens.append({
                "token": token,
                "wallet_count": len(wallets),
                "available_chains": sorted({w.chain.value for w in wallets}),
                "average_network_fee": total_fee / len(wallets)
            })
        tokens.sort(key=lambda t: (-t["wallet_count"], t["token"]))
        return tokens
