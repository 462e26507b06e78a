"""
Settlement network collaborators.

The accrual core never signs or orders transactions itself. It talks to the
settlement network through the LedgerGateway protocol:

- InMemoryLedger: a process-local ledger used in tests and local runs. Knobs
  let a test drop parts of a submission response or fail individual
  operations.
- HttpLedgerGateway: an httpx client for a Horizon-style service that reads
  account state directly and submits operations through a signing relay.
"""

import base64
import hashlib
import json
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol
from uuid import uuid4

import httpx

from .models import ClaimableUnit, utcnow


CLAIM_CREATED_EFFECTS = ("claimable_balance_created", "claimable_balance_claimant_created")


class LedgerError(Exception):
    pass


@dataclass(frozen=True)
class Asset:
    code: str
    issuer: str

    def canonical(self) -> str:
        return f"{self.code}:{self.issuer}" if self.issuer else self.code


@dataclass
class Submission:
    tx_ref: str
    effects: list[dict[str, Any]] = field(default_factory=list)
    result_payload: Optional[str] = None
    successful: bool = True


class LedgerGateway(Protocol):
    supports_atomic_provisioning: bool

    def account_exists(self, address: str) -> bool: ...
    def create_account(self, address: str, reserve: Decimal) -> str: ...
    def create_account_with_authorization(self, address: str, asset: Asset, reserve: Decimal) -> str: ...
    def has_authorization(self, address: str, asset: Asset) -> bool: ...
    def create_authorization(self, address: str, asset: Asset) -> str: ...
    def create_claimable_unit(self, recipient: str, asset: Asset, amount: Decimal) -> Submission: ...
    def query_effects_by_transaction(self, tx_ref: str) -> list[dict[str, Any]]: ...
    def get_balance(self, address: str, asset: Asset) -> Decimal: ...
    def list_claimable_units(self, address: str, asset: Asset) -> list[ClaimableUnit]: ...
    def claim_claimable_unit(self, address: str, unit_id: str) -> str: ...


def encode_result_payload(operations: list[dict[str, Any]]) -> str:
    raw = json.dumps({"operations": operations}, separators=(",", ":")).encode()
    return base64.b64encode(raw).decode()


def decode_result_payload(payload: str) -> dict[str, Any]:
    return json.loads(base64.b64decode(payload, validate=True))


def _new_tx_ref() -> str:
    return hashlib.sha256(uuid4().bytes).hexdigest()


class InMemoryLedger:
    def __init__(self, atomic: bool = True, platform_balance: Optional[Decimal] = None):
        self.supports_atomic_provisioning = atomic
        self.platform_balance = platform_balance
        self.accounts: dict[str, dict] = {}
        self.claimable_units: dict[str, dict] = {}
        self.transactions: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.omit_effects = False
        self.omit_payload = False
        self.omit_history = False
        self._lock = threading.RLock()

    def fail(self, *operations: str) -> None:
        self.failing.update(operations)

    def recover(self) -> None:
        self.failing.clear()

    def _begin(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failing:
            raise LedgerError(f"{operation} unavailable")

    def _record(self, effects: list[dict[str, Any]]) -> str:
        tx_ref = _new_tx_ref()
        self.transactions[tx_ref] = effects
        return tx_ref

    def add_account(self, address: str, *assets: Asset) -> None:
        self.accounts[address] = {
            "authorizations": {a.canonical() for a in assets},
            "balances": {a.canonical(): Decimal("0") for a in assets},
        }

    def account_exists(self, address: str) -> bool:
        self._begin("account_exists")
        return address in self.accounts

    def create_account(self, address: str, reserve: Decimal) -> str:
        self._begin("create_account")
        with self._lock:
            if address in self.accounts:
                raise LedgerError("op_already_exists")
            self.accounts[address] = {"authorizations": set(), "balances": {}, "reserve": reserve}
            return self._record([{"type": "account_created", "account": address}])

    def create_account_with_authorization(self, address: str, asset: Asset, reserve: Decimal) -> str:
        self._begin("create_account_with_authorization")
        with self._lock:
            if address in self.accounts:
                raise LedgerError("op_already_exists")
            self.accounts[address] = {
                "authorizations": {asset.canonical()},
                "balances": {asset.canonical(): Decimal("0")},
                "reserve": reserve,
            }
            return self._record([
                {"type": "account_created", "account": address},
                {"type": "trustline_created", "account": address, "asset": asset.canonical()},
            ])

    def has_authorization(self, address: str, asset: Asset) -> bool:
        self._begin("has_authorization")
        account = self.accounts.get(address)
        return bool(account) and asset.canonical() in account["authorizations"]

    def create_authorization(self, address: str, asset: Asset) -> str:
        self._begin("create_authorization")
        with self._lock:
            account = self.accounts.get(address)
            if account is None:
                raise LedgerError("op_no_source_account")
            account["authorizations"].add(asset.canonical())
            account["balances"].setdefault(asset.canonical(), Decimal("0"))
            return self._record([{"type": "trustline_created", "account": address, "asset": asset.canonical()}])

    def create_claimable_unit(self, recipient: str, asset: Asset, amount: Decimal) -> Submission:
        self._begin("create_claimable_unit")
        with self._lock:
            if self.platform_balance is not None:
                if self.platform_balance < amount:
                    raise LedgerError("op_underfunded")
                self.platform_balance -= amount
            unit_id = "00000000" + hashlib.sha256(uuid4().bytes).hexdigest()
            self.claimable_units[unit_id] = {
                "id": unit_id, "asset_code": asset.code, "asset": asset.canonical(),
                "amount": amount, "recipient": recipient, "created_at": utcnow(),
            }
            effects = [{
                "type": "claimable_balance_created",
                "balance_id": unit_id,
                "asset": asset.canonical(),
                "amount": str(amount),
            }]
            tx_ref = self._record(effects)
        payload = encode_result_payload([{
            "changes": [{"change": "created", "entry": {"type": "claimable_balance", "balance_id": unit_id}}],
        }])
        return Submission(
            tx_ref=tx_ref,
            effects=[] if self.omit_effects else list(effects),
            result_payload=None if self.omit_payload else payload,
        )

    def query_effects_by_transaction(self, tx_ref: str) -> list[dict[str, Any]]:
        self._begin("query_effects_by_transaction")
        if self.omit_history:
            return []
        return list(self.transactions.get(tx_ref, []))

    def get_balance(self, address: str, asset: Asset) -> Decimal:
        self._begin("get_balance")
        account = self.accounts.get(address)
        if account is None:
            return Decimal("0")
        return account["balances"].get(asset.canonical(), Decimal("0"))

    def list_claimable_units(self, address: str, asset: Asset) -> list[ClaimableUnit]:
        self._begin("list_claimable_units")
        return [
            ClaimableUnit(
                id=u["id"], asset_code=u["asset_code"], amount=u["amount"],
                recipient=u["recipient"], created_at=u["created_at"],
            )
            for u in self.claimable_units.values()
            if u["recipient"] == address and u["asset"] == asset.canonical()
        ]

    def claim_claimable_unit(self, address: str, unit_id: str) -> str:
        self._begin("claim_claimable_unit")
        with self._lock:
            unit = self.claimable_units.get(unit_id)
            if unit is None or unit["recipient"] != address:
                raise LedgerError("op_does_not_exist")
            account = self.accounts.get(address)
            if account is None or unit["asset"] not in account["authorizations"]:
                raise LedgerError("op_no_trust")
            account["balances"][unit["asset"]] = account["balances"].get(unit["asset"], Decimal("0")) + unit["amount"]
            del self.claimable_units[unit_id]
            return self._record([{"type": "claimable_balance_claimed", "balance_id": unit_id}])


class HttpLedgerGateway:
    supports_atomic_provisioning = True

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise LedgerError(f"{method} {path} failed: {e}") from e
        return resp

    def _json(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        resp = self._request(method, path, **kwargs)
        if resp.status_code >= 400:
            detail = resp.text[:200]
            try:
                codes = resp.json().get("extras", {}).get("result_codes")
                if codes:
                    detail = json.dumps(codes)
            except ValueError:
                pass
            raise LedgerError(f"{method} {path} returned {resp.status_code}: {detail}")
        return self._decode(resp, method, path)

    @staticmethod
    def _decode(resp: httpx.Response, method: str, path: str) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise LedgerError(f"{method} {path} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise LedgerError(f"{method} {path} returned {type(data).__name__}, expected an object")
        return data

    def _submit(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        data = self._json(method, path, **kwargs)
        if not data.get("hash"):
            raise LedgerError(f"{method} {path} response carries no transaction hash")
        return data

    def _load_account(self, address: str) -> Optional[dict[str, Any]]:
        resp = self._request("GET", f"/accounts/{address}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise LedgerError(f"GET /accounts/{address} returned {resp.status_code}")
        return self._decode(resp, "GET", f"/accounts/{address}")

    @staticmethod
    def _asset_body(asset: Asset) -> dict[str, str]:
        return {"code": asset.code, "issuer": asset.issuer}

    @staticmethod
    def _matches(balance: dict[str, Any], asset: Asset) -> bool:
        return (
            balance.get("asset_type") in ("credit_alphanum4", "credit_alphanum12")
            and balance.get("asset_code") == asset.code
            and balance.get("asset_issuer") == asset.issuer
        )

    def account_exists(self, address: str) -> bool:
        return self._load_account(address) is not None

    def create_account(self, address: str, reserve: Decimal) -> str:
        body = {"destination": address, "starting_balance": str(reserve)}
        return self._submit("POST", "/accounts", json=body)["hash"]

    def create_account_with_authorization(self, address: str, asset: Asset, reserve: Decimal) -> str:
        body = {
            "destination": address,
            "starting_balance": str(reserve),
            "trust": [self._asset_body(asset)],
        }
        return self._submit("POST", "/accounts", json=body)["hash"]

    def has_authorization(self, address: str, asset: Asset) -> bool:
        account = self._load_account(address)
        if account is None:
            return False
        return any(self._matches(b, asset) for b in account.get("balances", []))

    def create_authorization(self, address: str, asset: Asset) -> str:
        return self._submit("POST", f"/accounts/{address}/trustlines", json=self._asset_body(asset))["hash"]

    def create_claimable_unit(self, recipient: str, asset: Asset, amount: Decimal) -> Submission:
        body = {"claimant": recipient, "asset": self._asset_body(asset), "amount": str(amount)}
        data = self._submit("POST", "/claimable_balances", json=body)
        return Submission(
            tx_ref=data["hash"],
            effects=data.get("effects") or [],
            result_payload=data.get("result_meta_xdr"),
            successful=bool(data.get("successful", True)),
        )

    def query_effects_by_transaction(self, tx_ref: str) -> list[dict[str, Any]]:
        tx = self._json("GET", f"/transactions/{tx_ref}")
        if not tx.get("successful", False):
            return []
        data = self._json("GET", f"/transactions/{tx_ref}/effects", params={"limit": 200})
        return data.get("_embedded", {}).get("records", [])

    def get_balance(self, address: str, asset: Asset) -> Decimal:
        account = self._load_account(address)
        if account is None:
            return Decimal("0")
        for balance in account.get("balances", []):
            if self._matches(balance, asset):
                try:
                    return Decimal(balance["balance"])
                except (KeyError, TypeError, ArithmeticError) as e:
                    raise LedgerError(f"unreadable balance for {address}: {e!r}") from e
        return Decimal("0")

    def list_claimable_units(self, address: str, asset: Asset) -> list[ClaimableUnit]:
        data = self._json(
            "GET", "/claimable_balances",
            params={"claimant": address, "asset": asset.canonical(), "limit": 200},
        )
        try:
            return [
                ClaimableUnit(
                    id=r["id"], asset_code=asset.code, amount=Decimal(r["amount"]),
                    recipient=address, created_at=r.get("last_modified_time"),
                )
                for r in data.get("_embedded", {}).get("records", [])
            ]
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise LedgerError(f"unreadable claimable balance listing for {address}: {e!r}") from e

    def claim_claimable_unit(self, address: str, unit_id: str) -> str:
        body = {"claimant": address}
        return self._submit("POST", f"/claimable_balances/{unit_id}/claim", json=body)["hash"]

