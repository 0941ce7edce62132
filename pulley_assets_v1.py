"""
Pulley Protocol - Asset Transfer Interface
Version: 1.0.0

In-memory stand-in for the fungible-asset contracts the core moves value
through. Every failure surfaces as TransferFailed.
"""

from typing import Callable, Dict, List, Optional, Tuple

from pulley_enforcement_v1 import (
    Snapshottable,
    TransferFailed,
    ZERO_ADDRESS,
    logger
)

# Called as hook(asset, sender, recipient, amount) after a transfer lands.
TransferHook = Callable[[str, str, str, int], None]

class AssetBank(Snapshottable):
    """Balances and allowances for every asset, keyed by (asset, account)."""

    SNAPSHOT_FIELDS = ("balances", "allowances")
    APPEND_ONLY_FIELDS = ("transfers",)

    def __init__(self):
        self.balances: Dict[str, Dict[str, int]] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.hooks: Dict[str, TransferHook] = {}
        self.transfers: List[Dict] = []

    # ----- views -----

    def balance_of(self, asset: str, account: str) -> int:
        """Get current balance."""
        return self.balances.get(asset, {}).get(account, 0)

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        return self.allowances.get((asset, owner, spender), 0)

    # ----- mutations -----

    def mint(self, asset: str, account: str, amount: int):
        """Credit an account out of thin air (faucet for wiring and tests)."""
        if amount < 0:
            raise TransferFailed(f"Cannot mint negative amount of {asset}")
        book = self.balances.setdefault(asset, {})
        book[account] = book.get(account, 0) + amount
        logger.info(f"[ASSETS] Minted {amount:,} {asset} to {account}")

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> bool:
        if amount < 0:
            raise TransferFailed("Allowance cannot be negative")
        self.allowances[(asset, owner, spender)] = amount
        return True

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> bool:
        """Move funds the sender owns."""
        self._move(asset, sender, recipient, amount)
        return True

    def transfer_from(self, asset: str, spender: str, owner: str, recipient: str, amount: int) -> bool:
        """Move funds on behalf of owner, consuming spender's allowance."""
        allowed = self.allowance(asset, owner, spender)
        if allowed < amount:
            raise TransferFailed(
                f"Allowance too low: {spender} may move {allowed:,} {asset} of {owner}, asked {amount:,}"
            )
        self._move(asset, owner, recipient, amount)
        self.allowances[(asset, owner, spender)] = allowed - amount
        return True

    def on_receive(self, account: str, hook: Optional[TransferHook]):
        """Install (or clear) a callback run whenever account receives funds."""
        if hook is None:
            self.hooks.pop(account, None)
        else:
            self.hooks[account] = hook

    def _move(self, asset: str, sender: str, recipient: str, amount: int):
        if amount < 0:
            raise TransferFailed("Transfer amount cannot be negative")
        if not recipient or recipient == ZERO_ADDRESS:
            raise TransferFailed("Transfer to the zero address")

        book = self.balances.setdefault(asset, {})
        available = book.get(sender, 0)
        if available < amount:
            raise TransferFailed(
                f"Insufficient {asset} balance for {sender}: has {available:,}, needs {amount:,}"
            )

        book[sender] = available - amount
        book[recipient] = book.get(recipient, 0) + amount
        self.transfers.append({
            'asset': asset,
            'from': sender,
            'to': recipient,
            'amount': amount
        })
        logger.info(f"[ASSETS] Transfer: {sender} → {recipient} {amount:,} {asset}")

        hook = self.hooks.get(recipient)
        if hook:
            hook(asset, sender, recipient, amount)
