"""
Transfer Ledger Module

Creates transfers, prices them, and executes them against account balances.
Processing is the one place where balances change: the debit of the source,
the credit of the destination and the COMPLETED status are committed together
or not at all.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple
import time
import uuid

from .accounts import Account
from .audit import AuditEventType
from .currency import Money
from .errors import (
    AuthorizationError, ConcurrencyError, ConflictError, InsufficientFundsError,
    InvalidTransitionError, ValidationError
)
from .lifecycle import Action, ResourceKind, ResourceService, action_rule, resolve_transition
from .rbac import AccessRule, Principal, authorize
from .schemas import TransferCreate, TransferPatch, parse_fields
from .transfers import Transfer, TransferStatus, TransferType, calculate_fee


ACCOUNTS = ResourceKind.ACCOUNT
TRANSFERS = ResourceKind.TRANSFER


class TransferLedger(ResourceService):
    """
    Transfer creation, pricing and atomic execution
    """

    logger_name = "bank_engine.transfers"

    def _fee(self, transfer_type: TransferType, amount: Money) -> Money:
        return calculate_fee(transfer_type, Decimal(self.config.external_transfer_fee), amount.currency)

    def _find_account_by_iban(self, iban: str) -> Optional[Account]:
        rows = self.storage.find(ACCOUNTS.table, {"iban": iban})
        return Account.from_dict(rows[0]) if rows else None

    def create(self, principal: Principal, fields: Any,
               idempotency_key: Optional[str] = None) -> Transfer:
        """
        Create a PENDING transfer out of one of the principal's accounts

        The source account must be ACTIVE. When no type is given it is
        inferred from the destination: one of the owner's own accounts makes
        it INTER_ACCOUNT, an IBAN held at this bank INTERNAL, anything else
        EXTERNAL. Balances are not touched until the transfer is processed.

        Raises:
            ValidationError: Bad fields, inactive source or invalid destination
            AuthorizationError: The source account belongs to someone else
            NotFoundError: The source or destination account does not exist
        """
        data = parse_fields(TransferCreate, fields)
        operation = "create:transfer"

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return self._replay(previous)

            source = self._load(ACCOUNTS, data.from_account_id)
            if not principal.owns(source.owner_id):
                raise AuthorizationError("Transfers can only be made from your own accounts")
            if not source.is_active:
                raise ValidationError(f"Source account {source.id} is {source.status.value}, not ACTIVE")

            self._check_precision(data.amount, source.currency, "amount")
            amount = Money(data.amount, source.currency)
            transfer_type, to_iban = self._resolve_destination(principal, source, data)
            fee = self._fee(transfer_type, amount)

            now = datetime.now(timezone.utc)
            transfer = Transfer(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=principal.user_id,
                from_account_id=source.id,
                to_iban=to_iban,
                to_account_id=data.to_account_id,
                amount=amount,
                fee=fee,
                total_amount=amount + fee,
                currency=source.currency,
                type=transfer_type,
                description=data.description,
                category=data.category
            )
            self.storage.save(TRANSFERS.table, transfer.id, transfer.to_dict())

            self._audit(AuditEventType.TRANSFER_CREATED, TRANSFERS, transfer.id, principal, {
                "type": transfer_type.value,
                "from_account": source.id,
                "to_iban": to_iban,
                "amount": amount.to_string(),
                "fee": fee.to_string()
            })
            self.idempotency.record(idempotency_key, principal.user_id, operation,
                                    TRANSFERS.name, transfer.to_dict())

        self._log("info", f"Transfer created: {transfer_type.value}", principal, "create",
                  TRANSFERS, transfer.id, idempotency_key,
                  extra={"amount": amount.to_string(), "fee": fee.to_string()})
        return transfer

    def _resolve_destination(self, principal: Principal, source: Account,
                             data: TransferCreate) -> Tuple[TransferType, str]:
        """Decide the transfer type and destination IBAN"""
        if data.to_account_id:
            destination = self._load(ACCOUNTS, data.to_account_id)
            if not principal.owns(destination.owner_id):
                raise ValidationError("INTER_ACCOUNT transfers must go to another of your own accounts")
            if data.to_iban and data.to_iban.replace(" ", "").upper() != destination.iban:
                raise ValidationError("to_iban does not match the destination account")
            return TransferType.INTER_ACCOUNT, destination.iban

        to_iban = data.to_iban.replace(" ", "").upper()
        if to_iban == source.iban:
            raise ValidationError("Cannot transfer to the source account")

        in_bank = self._find_account_by_iban(to_iban) is not None
        if data.type == TransferType.INTERNAL and not in_bank:
            raise ValidationError(f"No account at this bank holds IBAN {to_iban}")
        if data.type is not None:
            return data.type, to_iban
        if in_bank:
            return TransferType.INTERNAL, to_iban
        return TransferType.EXTERNAL, to_iban

    def process(self, transfer_id: str, principal: Principal,
                idempotency_key: Optional[str] = None) -> Transfer:
        """
        Execute a PENDING transfer. ADMIN only.

        Lost compare-and-swap races and storage lock timeouts are retried a
        bounded number of times before surfacing as ConcurrencyError.

        Raises:
            InsufficientFundsError: The source balance does not cover the
                total; the transfer is left FAILED
            ConflictError: The source or destination account is not ACTIVE;
                the transfer stays PENDING
            ConcurrencyError: Retries exhausted; the transfer stays PENDING
        """
        max_retries = max(1, self.config.process_max_retries)
        for attempt in range(1, max_retries + 1):
            try:
                return self._process_once(transfer_id, principal, idempotency_key)
            except ConcurrencyError as e:
                if attempt == max_retries:
                    self._log("error", f"Transfer processing gave up after {attempt} attempts: {e}",
                              principal, "process", TRANSFERS, transfer_id, idempotency_key)
                    raise
                self._log("warning", f"Transfer processing attempt {attempt} lost a race, retrying",
                          principal, "process", TRANSFERS, transfer_id, idempotency_key)
                time.sleep(self.config.process_retry_backoff_seconds * attempt)

    def _process_once(self, transfer_id: str, principal: Principal,
                      idempotency_key: Optional[str]) -> Transfer:
        operation = f"process:transfer:{transfer_id}"
        shortfall = None

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return self._replay(previous)

            transfer = self._load(TRANSFERS, transfer_id)
            authorize(principal, action_rule(TRANSFERS, Action.PROCESS), transfer.owner_id,
                      "process transfers")
            try:
                transition = resolve_transition(TRANSFERS, transfer.status, Action.PROCESS, transfer_id)
            except InvalidTransitionError:
                self._log("warning", f"Rejected process of transfer in status {transfer.status.value}",
                          principal, "process", TRANSFERS, transfer_id, idempotency_key)
                raise

            source = self._load(ACCOUNTS, transfer.from_account_id)
            if not source.is_active:
                raise ConflictError(f"Source account {source.id} is {source.status.value}, not ACTIVE")

            if source.balance < transfer.total_amount:
                shortfall = (source.balance, transfer.total_amount)
                transfer.status = TransferStatus.FAILED
                transfer.failure_reason = (
                    f"Insufficient funds: available {source.balance.to_string()}, "
                    f"required {transfer.total_amount.to_string()}"
                )
                transfer.processed_at = datetime.now(timezone.utc)
                if not self._swap(TRANSFERS, transfer):
                    raise ConcurrencyError(f"Transfer {transfer_id} changed while processing")
                self._audit(AuditEventType.TRANSFER_FAILED, TRANSFERS, transfer.id, principal,
                            {"reason": transfer.failure_reason})
            else:
                source.balance = source.balance - transfer.total_amount
                if not self._swap(ACCOUNTS, source):
                    raise ConcurrencyError(f"Account {source.id} changed while processing")
                self._audit(AuditEventType.BALANCE_DEBITED, ACCOUNTS, source.id, principal, {
                    "transfer_id": transfer.id,
                    "amount": transfer.total_amount.to_string(),
                    "balance": source.balance.to_string()
                })

                self._credit_destination(transfer, source, principal)

                transfer.status = transition.next_state
                transfer.processed_at = datetime.now(timezone.utc)
                if not self._swap(TRANSFERS, transfer):
                    raise ConcurrencyError(f"Transfer {transfer_id} changed while processing")
                self._audit(AuditEventType.TRANSFER_COMPLETED, TRANSFERS, transfer.id, principal,
                            {"total_amount": transfer.total_amount.to_string()})
                self.idempotency.record(idempotency_key, principal.user_id, operation,
                                        TRANSFERS.name, transfer.to_dict())

        if shortfall is not None:
            available, required = shortfall
            self._log("warning", "Transfer failed: insufficient funds", principal, "process",
                      TRANSFERS, transfer_id, idempotency_key,
                      extra={"available": available.to_string(), "required": required.to_string()})
            raise InsufficientFundsError(transfer_id, available, required)

        self._log("info", f"Transfer completed: {transfer.type.value}", principal, "process",
                  TRANSFERS, transfer_id, idempotency_key,
                  extra={"total_amount": transfer.total_amount.to_string()})
        return transfer

    def _credit_destination(self, transfer: Transfer, source: Account, principal: Principal) -> None:
        """Credit the amount (never the fee) to an in-bank destination"""
        if transfer.type == TransferType.EXTERNAL:
            return

        if transfer.type == TransferType.INTER_ACCOUNT:
            destination = self._load(ACCOUNTS, transfer.to_account_id)
            if destination.owner_id != source.owner_id:
                raise ValidationError("INTER_ACCOUNT destination belongs to a different owner")
        else:
            destination = self._find_account_by_iban(transfer.to_iban)
            if destination is None:
                raise ConflictError(f"No account at this bank holds IBAN {transfer.to_iban}")

        if not destination.is_active:
            raise ConflictError(
                f"Destination account {destination.id} is {destination.status.value}, not ACTIVE"
            )
        if destination.currency != transfer.currency:
            raise ConflictError(
                f"Destination account {destination.id} holds {destination.currency.code}, "
                f"transfer is in {transfer.currency.code}"
            )

        destination.balance = destination.balance + transfer.amount
        if not self._swap(ACCOUNTS, destination):
            raise ConcurrencyError(f"Account {destination.id} changed while processing")
        self._audit(AuditEventType.BALANCE_CREDITED, ACCOUNTS, destination.id, principal, {
            "transfer_id": transfer.id,
            "amount": transfer.amount.to_string(),
            "balance": destination.balance.to_string()
        })

    def cancel(self, transfer_id: str, principal: Principal,
               idempotency_key: Optional[str] = None) -> Transfer:
        """PENDING -> CANCELLED. The owner or an ADMIN; balances are never touched."""
        return self._transition(TRANSFERS, transfer_id, principal, Action.CANCEL, idempotency_key)

    def update(self, transfer_id: str, principal: Principal, patch: Any,
               idempotency_key: Optional[str] = None) -> Transfer:
        """
        Change amount, description or category of a PENDING transfer

        A new amount re-prices the fee and total.
        """
        parsed = parse_fields(TransferPatch, patch)
        changes = parsed.changes()
        operation = f"update:transfer:{transfer_id}"

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return self._replay(previous)

            transfer = self._load(TRANSFERS, transfer_id)
            self._check_patch_access(principal, parsed, transfer.owner_id, TRANSFERS)
            if not transfer.is_pending:
                raise InvalidTransitionError(TRANSFERS.label, transfer_id, transfer.status.value, "update")

            if 'amount' in changes:
                self._check_precision(changes['amount'], transfer.currency, "amount")
                amount = Money(changes['amount'], transfer.currency)
                transfer.reprice(amount, self._fee(transfer.type, amount))
            if 'description' in changes:
                transfer.description = changes['description']
            if 'category' in changes:
                transfer.category = changes['category']

            self._write(TRANSFERS, transfer, "update")
            self._audit(AuditEventType.TRANSFER_UPDATED, TRANSFERS, transfer.id, principal,
                        {"fields": sorted(changes), "total_amount": transfer.total_amount.to_string()})
            self.idempotency.record(idempotency_key, principal.user_id, operation,
                                    TRANSFERS.name, transfer.to_dict())

        self._log("info", "Transfer updated", principal, "update", TRANSFERS, transfer_id,
                  idempotency_key, extra={"fields": sorted(changes)})
        return transfer

    def delete(self, transfer_id: str, principal: Principal,
               idempotency_key: Optional[str] = None) -> None:
        """
        Delete a PENDING transfer. The owner or an ADMIN.

        Completed, failed and cancelled transfers are kept as audit records.
        """
        operation = f"delete:transfer:{transfer_id}"

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return None

            transfer = self._load(TRANSFERS, transfer_id)
            authorize(principal, AccessRule.OWNER_OR_ADMIN, transfer.owner_id, "delete this transfer")
            if not transfer.is_pending:
                raise InvalidTransitionError(TRANSFERS.label, transfer_id, transfer.status.value, "delete")

            self._remove(TRANSFERS, transfer)
            self._audit(AuditEventType.TRANSFER_DELETED, TRANSFERS, transfer.id, principal,
                        {"amount": transfer.amount.to_string()})
            self.idempotency.record(idempotency_key, principal.user_id, operation, TRANSFERS.name, None)

        self._log("info", "Transfer deleted", principal, "delete", TRANSFERS, transfer_id, idempotency_key)
        return None

    def get_transfer(self, transfer_id: str, principal: Principal) -> Transfer:
        return self.get(TRANSFERS, transfer_id, principal)

    def list_transfers(self, principal: Principal) -> List[Transfer]:
        """The principal's own transfers"""
        return self.list_mine(TRANSFERS, principal)

    def list_all_transfers(self, principal: Principal) -> List[Transfer]:
        return self.list_all(TRANSFERS, principal)

    def list_pending_transfers(self, principal: Principal) -> List[Transfer]:
        """Transfers waiting to be processed. ADMIN only."""
        return self.list_pending(TRANSFERS, principal)

    def recent_transfers(self, principal: Principal, days: int = 30) -> List[Transfer]:
        """
        Transfers created in the last ``days`` days, newest first

        An ADMIN sees everyone's; a USER sees their own.
        """
        if days < 0:
            raise ValidationError("days cannot be negative")
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        if principal.is_admin:
            transfers = self._records(TRANSFERS)
        else:
            transfers = self._records(TRANSFERS, {"owner_id": principal.user_id})
        recent = [transfer for transfer in transfers if transfer.created_at >= cutoff]
        recent.sort(key=lambda transfer: transfer.created_at, reverse=True)
        return recent

    def account_transfers(self, account_id: str, principal: Principal) -> List[Transfer]:
        """
        Transfer history of one account, newest first

        Covers transfers out of the account and transfers into it, whether
        addressed by account id or by its IBAN. The account owner or an ADMIN.
        """
        account = self._load(ACCOUNTS, account_id)
        authorize(principal, AccessRule.OWNER_OR_ADMIN, account.owner_id, "view this account's transfers")

        matches = {}
        for filters in ({"from_account_id": account.id}, {"to_account_id": account.id},
                        {"to_iban": account.iban}):
            for transfer in self._records(TRANSFERS, filters):
                matches[transfer.id] = transfer
        return sorted(matches.values(), key=lambda transfer: transfer.created_at, reverse=True)
