"""
Lifecycle Engine Module

One state machine shape governs accounts, cards and loans. The rules live in
a single transition table, ``{kind -> {state -> {action -> Transition}}}``,
and one generic executor applies them: load the record, check the access
rule, look up the edge for its stored status, then write the new status with
a compare-and-swap on the record version, all inside one storage transaction
together with the audit event and the idempotency record.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import uuid

from .accounts import Account, AccountStatus, apply_account_patch, new_account
from .amortization import AmortizationEntry, amortization_schedule
from .audit import AuditEventType, AuditTrail
from .cards import Card, CardStatus, CardType, apply_card_patch, new_card
from .config import EngineConfig, get_config
from .currency import Currency, Money, fits_currency_precision, parse_currency
from .errors import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError, ValidationError
)
from .idempotency import IdempotencyRecord, IdempotencyStore
from .loans import Loan, LoanStatus, NUMERIC_TERMS, apply_loan_patch, new_loan
from .logging_config import get_logger, log_action
from .rbac import AccessRule, Principal, authorize, require_admin
from .schemas import (
    AccountCreate, AccountPatch, CardCreate, CardPatch, LoanCreate, LoanPatch, PatchSchema,
    parse_fields
)
from .storage import StorageInterface, StorageRecord
from .transfers import Transfer, TransferStatus


class ResourceKind(Enum):
    """Resource kinds and the tables they are stored in"""
    ACCOUNT = ("account", "accounts")
    CARD = ("card", "cards")
    LOAN = ("loan", "loans")
    TRANSFER = ("transfer", "transfers")

    def __init__(self, label: str, table: str):
        self.label = label
        self.table = table


APPLICATION_KINDS = (ResourceKind.ACCOUNT, ResourceKind.CARD, ResourceKind.LOAN)

RECORD_TYPES = {
    ResourceKind.ACCOUNT: Account,
    ResourceKind.CARD: Card,
    ResourceKind.LOAN: Loan,
    ResourceKind.TRANSFER: Transfer,
}

STATUS_TYPES = {
    ResourceKind.ACCOUNT: AccountStatus,
    ResourceKind.CARD: CardStatus,
    ResourceKind.LOAN: LoanStatus,
    ResourceKind.TRANSFER: TransferStatus,
}


class Action(Enum):
    """Status-changing actions"""
    APPROVE = "approve"
    REJECT = "reject"
    TOGGLE_STATUS = "toggle_status"
    CANCEL = "cancel"
    ACTIVATE = "activate"
    COMPLETE = "complete"
    PROCESS = "process"


@dataclass(frozen=True)
class Transition:
    """Edge of the state machine: who may take it and where it leads"""
    rule: AccessRule
    next_state: Optional[Enum]  # None removes the record


_ADMIN = AccessRule.ADMIN
_OWNER_OR_ADMIN = AccessRule.OWNER_OR_ADMIN

TRANSITIONS: Dict[ResourceKind, Dict[Enum, Dict[Action, Transition]]] = {
    ResourceKind.ACCOUNT: {
        AccountStatus.PENDING: {
            Action.APPROVE: Transition(_ADMIN, AccountStatus.ACTIVE),
            Action.REJECT: Transition(_ADMIN, None),
            Action.CANCEL: Transition(_ADMIN, AccountStatus.CANCELLED),
        },
        AccountStatus.ACTIVE: {
            Action.TOGGLE_STATUS: Transition(_OWNER_OR_ADMIN, AccountStatus.FROZEN),
            Action.CANCEL: Transition(_ADMIN, AccountStatus.CANCELLED),
        },
        AccountStatus.FROZEN: {
            Action.TOGGLE_STATUS: Transition(_OWNER_OR_ADMIN, AccountStatus.ACTIVE),
            Action.CANCEL: Transition(_ADMIN, AccountStatus.CANCELLED),
        },
        AccountStatus.CANCELLED: {},
    },
    ResourceKind.CARD: {
        CardStatus.PENDING: {
            Action.APPROVE: Transition(_ADMIN, CardStatus.ACTIVE),
            Action.REJECT: Transition(_ADMIN, None),
            Action.CANCEL: Transition(_ADMIN, CardStatus.CANCELLED),
        },
        CardStatus.ACTIVE: {
            Action.TOGGLE_STATUS: Transition(_OWNER_OR_ADMIN, CardStatus.BLOCKED),
            Action.CANCEL: Transition(_ADMIN, CardStatus.CANCELLED),
        },
        CardStatus.BLOCKED: {
            Action.TOGGLE_STATUS: Transition(_OWNER_OR_ADMIN, CardStatus.ACTIVE),
            Action.CANCEL: Transition(_ADMIN, CardStatus.CANCELLED),
        },
        CardStatus.CANCELLED: {},
    },
    ResourceKind.LOAN: {
        LoanStatus.PENDING: {
            Action.APPROVE: Transition(_ADMIN, LoanStatus.APPROVED),
            Action.REJECT: Transition(_ADMIN, LoanStatus.REJECTED),
            Action.CANCEL: Transition(_OWNER_OR_ADMIN, LoanStatus.CANCELLED),
        },
        LoanStatus.APPROVED: {
            Action.ACTIVATE: Transition(_ADMIN, LoanStatus.ACTIVE),
            Action.CANCEL: Transition(_OWNER_OR_ADMIN, LoanStatus.CANCELLED),
        },
        LoanStatus.ACTIVE: {
            Action.COMPLETE: Transition(_ADMIN, LoanStatus.PAID),
            Action.CANCEL: Transition(_OWNER_OR_ADMIN, LoanStatus.CANCELLED),
        },
        LoanStatus.REJECTED: {},
        LoanStatus.PAID: {},
        LoanStatus.CANCELLED: {},
    },
    ResourceKind.TRANSFER: {
        TransferStatus.PENDING: {
            Action.PROCESS: Transition(_ADMIN, TransferStatus.COMPLETED),
            Action.CANCEL: Transition(_OWNER_OR_ADMIN, TransferStatus.CANCELLED),
        },
        TransferStatus.COMPLETED: {},
        TransferStatus.FAILED: {},
        TransferStatus.CANCELLED: {},
    },
}

TERMINAL_STATES = frozenset(
    state
    for edges_by_state in TRANSITIONS.values()
    for state, edges in edges_by_state.items()
    if not edges
)

_RESOURCE_EVENTS = {
    Action.APPROVE: AuditEventType.RESOURCE_APPROVED,
    Action.REJECT: AuditEventType.RESOURCE_REJECTED,
    Action.TOGGLE_STATUS: AuditEventType.RESOURCE_STATUS_TOGGLED,
    Action.CANCEL: AuditEventType.RESOURCE_CANCELLED,
    Action.ACTIVATE: AuditEventType.RESOURCE_ACTIVATED,
    Action.COMPLETE: AuditEventType.RESOURCE_COMPLETED,
}

_TRANSFER_EVENTS = {
    Action.PROCESS: AuditEventType.TRANSFER_COMPLETED,
    Action.CANCEL: AuditEventType.TRANSFER_CANCELLED,
}


def action_rule(kind: ResourceKind, action: Action, resource_id: str = "",
                current_status: Optional[str] = None) -> AccessRule:
    """
    Access rule guarding an action on a kind

    Raises:
        InvalidTransitionError: If the kind has no edge for the action at all
    """
    for edges in TRANSITIONS[kind].values():
        if action in edges:
            return edges[action].rule
    raise InvalidTransitionError(
        kind.label, resource_id, current_status, action.value,
        message=f"Action {action.value} is not defined for {kind.label}s"
    )


def resolve_transition(kind: ResourceKind, current_status: Enum, action: Action,
                       resource_id: str = "") -> Transition:
    """
    Look up the edge leaving current_status for an action

    Raises:
        InvalidTransitionError: If no such edge exists
    """
    transition = TRANSITIONS[kind].get(current_status, {}).get(action)
    if transition is None:
        raise InvalidTransitionError(kind.label, resource_id, current_status.value, action.value)
    return transition


def _parse_kind(kind: Union[ResourceKind, str]) -> ResourceKind:
    if isinstance(kind, ResourceKind):
        return kind
    try:
        return ResourceKind[str(kind).upper()]
    except KeyError:
        raise ValidationError(f"Unknown resource kind: {kind}")


class ResourceService:
    """
    Storage, audit, idempotency and logging plumbing shared by the
    lifecycle engine and the transfer ledger
    """

    logger_name = "bank_engine"

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        idempotency: IdempotencyStore,
        config: Optional[EngineConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.idempotency = idempotency
        self.config = config or get_config()
        self.logger = get_logger(self.logger_name)

    # Storage helpers

    def _load(self, kind: ResourceKind, resource_id: str) -> StorageRecord:
        data = self.storage.load(kind.table, resource_id)
        if data is None:
            raise NotFoundError(f"{kind.label.capitalize()} {resource_id} not found")
        return RECORD_TYPES[kind].from_dict(data)

    def _records(self, kind: ResourceKind, filters: Optional[Dict[str, Any]] = None) -> List[StorageRecord]:
        rows = self.storage.find(kind.table, filters) if filters else self.storage.load_all(kind.table)
        records = [RECORD_TYPES[kind].from_dict(row) for row in rows]
        records.sort(key=lambda record: record.created_at)
        return records

    def _swap(self, kind: ResourceKind, record: StorageRecord) -> bool:
        """Bump the record version and write it only if nobody else did first"""
        expected = record.version
        record.version = expected + 1
        record.updated_at = datetime.now(timezone.utc)
        if self.storage.compare_and_swap(kind.table, record.id, expected, record.to_dict()):
            return True
        record.version = expected
        return False

    def _write(self, kind: ResourceKind, record: StorageRecord, action: str) -> None:
        if not self._swap(kind, record):
            raise InvalidTransitionError(
                kind.label, record.id, record.status.value, action,
                message=f"{kind.label.capitalize()} {record.id} was modified concurrently; re-fetch and retry"
            )

    def _remove(self, kind: ResourceKind, record: StorageRecord) -> Dict[str, int]:
        """Delete a record and everything that depends on it"""
        removed = {"cards": 0, "transfers": 0}
        if kind == ResourceKind.ACCOUNT:
            for card in self.storage.find(ResourceKind.CARD.table, {"account_id": record.id}):
                self.storage.delete(ResourceKind.CARD.table, card['id'])
                removed["cards"] += 1

            transfer_ids = {
                row['id'] for row in self.storage.find(ResourceKind.TRANSFER.table, {"from_account_id": record.id})
            }
            transfer_ids.update(
                row['id'] for row in self.storage.find(ResourceKind.TRANSFER.table, {"to_account_id": record.id})
            )
            for transfer_id in transfer_ids:
                self.storage.delete(ResourceKind.TRANSFER.table, transfer_id)
            removed["transfers"] = len(transfer_ids)

        if not self.storage.delete(kind.table, record.id):
            raise NotFoundError(f"{kind.label.capitalize()} {record.id} not found")
        return removed

    # Idempotency, audit and logging

    def _replay(self, previous: IdempotencyRecord) -> Optional[StorageRecord]:
        self.logger.info(f"Replaying {previous.operation} for idempotency key {previous.key}")
        if previous.result is None:
            return None
        return RECORD_TYPES[ResourceKind[previous.kind]].from_dict(previous.result)

    def _audit(self, event_type: AuditEventType, kind: ResourceKind, resource_id: str,
               principal: Principal, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type=kind.label,
            entity_id=resource_id,
            metadata=metadata,
            user_id=principal.user_id
        )

    def _log(self, level: str, message: str, principal: Principal, action: str,
             kind: ResourceKind, resource_id: str, idempotency_key: Optional[str] = None,
             extra: Optional[dict] = None) -> None:
        log_action(
            self.logger, level, message,
            user_id=principal.user_id, action=action,
            resource=f"{kind.label}:{resource_id}",
            correlation_id=idempotency_key, extra=extra
        )

    # Validation helpers

    @staticmethod
    def _check_precision(value: Decimal, currency: Currency, field_name: str) -> None:
        if not fits_currency_precision(value, currency):
            raise ValidationError(
                f"{field_name} has more decimal places than {currency.code} allows"
            )

    def _currency(self, code: Optional[str]) -> Currency:
        try:
            return parse_currency(code or self.config.default_currency)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    @staticmethod
    def _check_patch_access(principal: Principal, patch: PatchSchema, owner_id: str,
                            kind: ResourceKind) -> None:
        authorize(principal, AccessRule.OWNER_OR_ADMIN, owner_id, f"update this {kind.label}")
        admin_fields = patch.admin_only_fields()
        if admin_fields and not principal.is_admin:
            raise AuthorizationError(
                f"Only ADMIN may change {', '.join(sorted(admin_fields))} on a {kind.label}"
            )

    # Generic executor

    def _transition(self, kind: ResourceKind, resource_id: str, principal: Principal,
                    action: Action, idempotency_key: Optional[str] = None,
                    prepare: Optional[Callable[[StorageRecord], None]] = None) -> StorageRecord:
        """
        Apply one edge of the transition table

        The stored status is re-read and checked inside the transaction, so of
        two racing calls on one record the first writer wins and the second
        fails with InvalidTransitionError.

        Args:
            prepare: Optional hook run on the record after its status changes
                and before it is written

        Returns:
            The updated record, or the deleted record's last state when the
            edge removes it
        """
        operation = f"{action.value}:{kind.label}:{resource_id}"

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return self._replay(previous)

            record = self._load(kind, resource_id)
            rule = action_rule(kind, action, resource_id, record.status.value)
            authorize(principal, rule, record.owner_id, f"{action.value} this {kind.label}")

            previous_status = record.status
            try:
                transition = resolve_transition(kind, previous_status, action, resource_id)
            except InvalidTransitionError:
                self._log("warning", f"Rejected {action.value} on {kind.label} in status {previous_status.value}",
                          principal, action.value, kind, resource_id, idempotency_key)
                raise

            metadata: Dict[str, Any] = {"previous_status": previous_status.value}
            if transition.next_state is None:
                metadata.update(self._remove(kind, record))
                metadata["deleted"] = True
            else:
                record.status = transition.next_state
                if prepare:
                    prepare(record)
                self._write(kind, record, action.value)
                metadata["new_status"] = record.status.value

            events = _TRANSFER_EVENTS if kind == ResourceKind.TRANSFER else _RESOURCE_EVENTS
            self._audit(events[action], kind, record.id, principal, metadata)
            self.idempotency.record(idempotency_key, principal.user_id, operation, kind.name, record.to_dict())

        self._log("info", f"{kind.label.capitalize()} {action.value}: "
                          f"{previous_status.value} -> {metadata.get('new_status', 'deleted')}",
                  principal, action.value, kind, resource_id, idempotency_key)
        return record

    # Reads

    def get(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal) -> StorageRecord:
        """Fetch one resource; only its owner or an ADMIN may read it"""
        kind = _parse_kind(kind)
        record = self._load(kind, resource_id)
        authorize(principal, AccessRule.OWNER_OR_ADMIN, record.owner_id, f"view this {kind.label}")
        return record

    def list_mine(self, kind: Union[ResourceKind, str], principal: Principal) -> List[StorageRecord]:
        """Resources owned by the calling principal, oldest first"""
        return self._records(_parse_kind(kind), {"owner_id": principal.user_id})

    def list_all(self, kind: Union[ResourceKind, str], principal: Principal) -> List[StorageRecord]:
        kind = _parse_kind(kind)
        require_admin(principal, f"list all {kind.label}s")
        return self._records(kind)

    def list_pending(self, kind: Union[ResourceKind, str], principal: Principal) -> List[StorageRecord]:
        """Applications awaiting an ADMIN decision"""
        return self.list_by_status(kind, "PENDING", principal)

    def list_by_status(self, kind: Union[ResourceKind, str], status: Union[Enum, str],
                       principal: Principal) -> List[StorageRecord]:
        kind = _parse_kind(kind)
        require_admin(principal, f"list {kind.label}s by status")
        status_type = STATUS_TYPES[kind]
        try:
            status = status_type(status.value if isinstance(status, Enum) else str(status).upper())
        except ValueError:
            raise ValidationError(f"Unknown {kind.label} status: {status}")
        return self._records(kind, {"status": status.value})

    def status_summary(self, kind: Union[ResourceKind, str], principal: Principal) -> Dict[str, int]:
        """Count of resources per status, every status included"""
        kind = _parse_kind(kind)
        require_admin(principal, f"summarize {kind.label}s")
        summary = {status.value: 0 for status in STATUS_TYPES[kind]}
        for row in self.storage.load_all(kind.table):
            summary[row['status']] = summary.get(row['status'], 0) + 1
        return summary


class LifecycleEngine(ResourceService):
    """
    Application lifecycle for accounts, cards and loans

    Every operation takes the authenticated principal and re-checks its role
    and ownership. Mutating operations accept an optional idempotency key; a
    retried call with the same key returns the original result.
    """

    logger_name = "bank_engine.lifecycle"

    def _application_kind(self, kind: Union[ResourceKind, str]) -> ResourceKind:
        kind = _parse_kind(kind)
        if kind not in APPLICATION_KINDS:
            raise ValidationError(f"{kind.label.capitalize()}s are managed by the transfer ledger")
        return kind

    def create(self, kind: Union[ResourceKind, str], principal: Principal, fields: Any,
               idempotency_key: Optional[str] = None) -> StorageRecord:
        """
        Create an application owned by the principal, in PENDING

        Args:
            kind: ACCOUNT, CARD or LOAN
            principal: Applicant, who becomes the owner
            fields: Create fields, validated against the kind's schema
            idempotency_key: Optional key making retries safe

        Raises:
            ValidationError: If the fields are missing, unknown or out of bounds
        """
        kind = self._application_kind(kind)
        builders = {
            ResourceKind.ACCOUNT: (AccountCreate, self._build_account),
            ResourceKind.CARD: (CardCreate, self._build_card),
            ResourceKind.LOAN: (LoanCreate, self._build_loan),
        }
        schema, build = builders[kind]
        data = parse_fields(schema, fields)
        operation = f"create:{kind.label}"

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return self._replay(previous)

            record = build(principal, data, datetime.now(timezone.utc))
            self.storage.save(kind.table, record.id, record.to_dict())

            self._audit(AuditEventType.RESOURCE_CREATED, kind, record.id, principal,
                        {"owner_id": record.owner_id, "status": record.status.value})
            self.idempotency.record(idempotency_key, principal.user_id, operation, kind.name, record.to_dict())

        self._log("info", f"{kind.label.capitalize()} application created", principal,
                  "create", kind, record.id, idempotency_key)
        return record

    def _build_account(self, principal: Principal, data: AccountCreate, now: datetime) -> Account:
        def iban_exists(iban: str) -> bool:
            return bool(self.storage.find(ResourceKind.ACCOUNT.table, {"iban": iban}))

        return new_account(
            str(uuid.uuid4()), now, principal.user_id, data.type,
            self._currency(data.currency), iban_exists,
            nickname=data.nickname,
            country_code=self.config.iban_country_code,
            bank_code=self.config.iban_bank_code
        )

    def _build_card(self, principal: Principal, data: CardCreate, now: datetime) -> Card:
        account = self._load(ResourceKind.ACCOUNT, data.account_id)
        if not principal.owns(account.owner_id):
            raise AuthorizationError("Cards can only be issued against your own accounts")
        if account.status == AccountStatus.CANCELLED:
            raise ConflictError(f"Account {account.id} is cancelled")

        credit_limit = None
        if data.credit_limit is not None:
            self._check_precision(data.credit_limit, account.currency, "credit_limit")
            credit_limit = Money(data.credit_limit, account.currency)

        return new_card(
            str(uuid.uuid4()), now, principal.user_id, account.id, data.type,
            credit_limit, validity_years=self.config.card_validity_years
        )

    def _build_loan(self, principal: Principal, data: LoanCreate, now: datetime) -> Loan:
        currency = self._currency(None)
        self._check_precision(data.principal, currency, "principal")
        return new_loan(
            str(uuid.uuid4()), now, principal.user_id, data.principal,
            data.interest_rate, data.term_months, currency, purpose=data.purpose
        )

    # Transitions

    def approve(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal,
                idempotency_key: Optional[str] = None) -> StorageRecord:
        """PENDING -> ACTIVE (account, card) or APPROVED (loan). ADMIN only."""
        return self._transition(self._application_kind(kind), resource_id, principal,
                                Action.APPROVE, idempotency_key)

    def reject(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal,
               notes: Optional[str] = None, idempotency_key: Optional[str] = None) -> StorageRecord:
        """
        Decline a PENDING application. ADMIN only.

        A rejected loan is kept as REJECTED with the notes recorded; a rejected
        account or card is deleted (with its dependents) and its last state
        returned.
        """
        def record_notes(record):
            if isinstance(record, Loan) and notes:
                record.admin_notes = notes

        return self._transition(self._application_kind(kind), resource_id, principal,
                                Action.REJECT, idempotency_key, prepare=record_notes)

    def toggle_status(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal,
                      idempotency_key: Optional[str] = None) -> StorageRecord:
        """Flip ACTIVE <-> FROZEN (account) or ACTIVE <-> BLOCKED (card)"""
        return self._transition(self._application_kind(kind), resource_id, principal,
                                Action.TOGGLE_STATUS, idempotency_key)

    def cancel(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal,
               reason: Optional[str] = None, idempotency_key: Optional[str] = None) -> StorageRecord:
        """
        Move a non-terminal application to CANCELLED

        Accounts and cards: ADMIN only. Loans: the owner or an ADMIN, with the
        reason recorded in the loan's admin notes.
        """
        def record_reason(record):
            if isinstance(record, Loan):
                record.admin_notes = reason or (
                    "Cancelled by admin" if principal.is_admin else "Cancelled by user"
                )

        return self._transition(self._application_kind(kind), resource_id, principal,
                                Action.CANCEL, idempotency_key, prepare=record_reason)

    def soft_delete(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal,
                    idempotency_key: Optional[str] = None) -> StorageRecord:
        """Alias of cancel: the record is kept, in CANCELLED"""
        return self.cancel(kind, resource_id, principal, idempotency_key=idempotency_key)

    def activate(self, loan_id: str, principal: Principal,
                 idempotency_key: Optional[str] = None) -> Loan:
        """APPROVED -> ACTIVE once the loan is disbursed"""
        return self._transition(ResourceKind.LOAN, loan_id, principal, Action.ACTIVATE, idempotency_key)

    def complete(self, loan_id: str, principal: Principal,
                 idempotency_key: Optional[str] = None) -> Loan:
        """ACTIVE -> PAID once the loan is fully repaid"""
        return self._transition(ResourceKind.LOAN, loan_id, principal, Action.COMPLETE, idempotency_key)

    # Field updates

    def update(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal,
               patch: Any, idempotency_key: Optional[str] = None) -> StorageRecord:
        """
        Apply an allow-listed patch

        Owners may change cosmetic fields only (account nickname, loan
        purpose). Balance, credit limit, loan terms and admin notes are ADMIN
        only. Loan term edits are accepted while PENDING or APPROVED and
        re-run the Loan Terms Calculator. Terminal records are immutable.

        Raises:
            ValidationError: Unknown fields, bad values or an empty patch
            AuthorizationError: Non-owner, or non-ADMIN touching ADMIN fields
            InvalidTransitionError: The stored status does not allow the edit
        """
        kind = self._application_kind(kind)
        schemas = {
            ResourceKind.ACCOUNT: AccountPatch,
            ResourceKind.CARD: CardPatch,
            ResourceKind.LOAN: LoanPatch,
        }
        parsed = parse_fields(schemas[kind], patch)
        changes = parsed.changes()
        operation = f"update:{kind.label}:{resource_id}"

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return self._replay(previous)

            record = self._load(kind, resource_id)
            self._check_patch_access(principal, parsed, record.owner_id, kind)

            if record.status in TERMINAL_STATES:
                raise InvalidTransitionError(kind.label, resource_id, record.status.value, "update")

            if kind == ResourceKind.ACCOUNT:
                if 'balance' in changes:
                    self._check_precision(changes['balance'], record.currency, "balance")
                apply_account_patch(record, changes)
            elif kind == ResourceKind.CARD:
                if 'credit_limit' in changes:
                    if record.type != CardType.CREDIT:
                        raise ValidationError("credit_limit can only be set on CREDIT cards")
                    self._check_precision(changes['credit_limit'], record.credit_limit.currency, "credit_limit")
                apply_card_patch(record, changes)
            else:
                if NUMERIC_TERMS & set(changes):
                    if record.status not in (LoanStatus.PENDING, LoanStatus.APPROVED):
                        raise InvalidTransitionError(
                            kind.label, resource_id, record.status.value, "update",
                            message=f"Loan terms cannot change once the loan is {record.status.value}"
                        )
                    if 'principal' in changes:
                        self._check_precision(changes['principal'], record.currency, "principal")
                apply_loan_patch(record, changes)

            self._write(kind, record, "update")
            self._audit(AuditEventType.RESOURCE_UPDATED, kind, record.id, principal,
                        {"fields": sorted(changes)})
            self.idempotency.record(idempotency_key, principal.user_id, operation, kind.name, record.to_dict())

        self._log("info", f"{kind.label.capitalize()} updated", principal, "update", kind,
                  resource_id, idempotency_key, extra={"fields": sorted(changes)})
        return record

    def permanent_delete(self, kind: Union[ResourceKind, str], resource_id: str, principal: Principal,
                         idempotency_key: Optional[str] = None) -> None:
        """
        Irreversibly delete a resource from any status. ADMIN only.

        Deleting an account also deletes its cards and every transfer from
        or to it, in the same transaction.
        """
        kind = self._application_kind(kind)
        operation = f"permanent_delete:{kind.label}:{resource_id}"

        with self.storage.atomic():
            previous = self.idempotency.lookup(idempotency_key, principal.user_id, operation)
            if previous is not None:
                return None

            require_admin(principal, f"permanently delete a {kind.label}")
            record = self._load(kind, resource_id)
            removed = self._remove(kind, record)

            self._audit(AuditEventType.RESOURCE_DELETED, kind, record.id, principal,
                        {"status": record.status.value, **removed})
            self.idempotency.record(idempotency_key, principal.user_id, operation, kind.name, None)

        self._log("info", f"{kind.label.capitalize()} permanently deleted", principal,
                  "permanent_delete", kind, resource_id, idempotency_key, extra=removed)
        return None

    # Loan reporting

    def total_principal_by_status(self, status: Union[LoanStatus, str],
                                  principal: Principal) -> Dict[str, Money]:
        """Sum of loan principal in a status, per currency code"""
        totals: Dict[str, Money] = {}
        for loan in self.list_by_status(ResourceKind.LOAN, status, principal):
            code = loan.currency.code
            totals[code] = totals.get(code, Money.zero(loan.currency)) + loan.principal
        return totals

    def loan_schedule(self, loan_id: str, principal: Principal,
                      first_payment_date: Optional[date] = None) -> List[AmortizationEntry]:
        """Repayment schedule of a loan's current terms"""
        loan = self.get(ResourceKind.LOAN, loan_id, principal)
        return amortization_schedule(
            loan.principal.amount, loan.interest_rate, loan.term_months,
            loan.currency, first_payment_date
        )
