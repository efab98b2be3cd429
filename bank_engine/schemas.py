"""
Pydantic schemas for create fields and allow-listed patches

Every create and update call is parsed through one of these models, so a
status, balance or owner field can never be smuggled in through an unrelated
edit: unknown keys are rejected, and patch fields are split into those the
owner may touch and those reserved for ADMIN.
"""

from decimal import Decimal
from typing import Any, ClassVar, Dict, FrozenSet, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .accounts import AccountType
from .cards import CardType
from .errors import ValidationError
from .transfers import TransferType


LOAN_MIN_PRINCIPAL = Decimal('100')
LOAN_MAX_PRINCIPAL = Decimal('100000')
LOAN_MAX_INTEREST_RATE = Decimal('0.25')
LOAN_MAX_TERM_MONTHS = 360


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# Create schemas

class AccountCreate(_Schema):
    type: AccountType
    nickname: Optional[str] = Field(None, max_length=50)
    currency: Optional[str] = Field(None, description="ISO code; engine default when omitted")


class CardCreate(_Schema):
    account_id: str = Field(..., min_length=1)
    type: CardType
    credit_limit: Optional[Decimal] = Field(None, gt=0)
    
    @model_validator(mode="after")
    def _credit_limit_iff_credit(self):
        if self.type == CardType.CREDIT and self.credit_limit is None:
            raise ValueError("credit_limit is required for CREDIT cards")
        if self.type == CardType.DEBIT and self.credit_limit is not None:
            raise ValueError("credit_limit is only allowed on CREDIT cards")
        return self


class LoanCreate(_Schema):
    principal: Decimal = Field(..., ge=LOAN_MIN_PRINCIPAL, le=LOAN_MAX_PRINCIPAL)
    interest_rate: Decimal = Field(..., ge=0, le=LOAN_MAX_INTEREST_RATE)
    term_months: int = Field(..., ge=1, le=LOAN_MAX_TERM_MONTHS)
    purpose: Optional[str] = Field(None, max_length=255)


class TransferCreate(_Schema):
    from_account_id: str = Field(..., min_length=1)
    to_iban: Optional[str] = Field(None, min_length=5, max_length=34)
    to_account_id: Optional[str] = None
    amount: Decimal = Field(..., gt=0)
    type: Optional[TransferType] = Field(None, description="Inferred from the destination when omitted")
    description: Optional[str] = Field(None, max_length=255)
    category: Optional[str] = Field(None, max_length=50)
    
    @model_validator(mode="after")
    def _destination(self):
        if not self.to_iban and not self.to_account_id:
            raise ValueError("Either to_iban or to_account_id is required")
        if self.type == TransferType.INTER_ACCOUNT and not self.to_account_id:
            raise ValueError("INTER_ACCOUNT transfers require to_account_id")
        if self.to_account_id and self.type not in (None, TransferType.INTER_ACCOUNT):
            raise ValueError("to_account_id is only allowed on INTER_ACCOUNT transfers")
        if self.to_account_id and self.to_account_id == self.from_account_id:
            raise ValueError("Cannot transfer to the source account")
        return self


# Patch schemas

class PatchSchema(_Schema):
    """Base for allow-listed patches"""
    
    owner_fields: ClassVar[FrozenSet[str]] = frozenset()
    non_nullable: ClassVar[FrozenSet[str]] = frozenset()
    
    def changes(self) -> Dict[str, Any]:
        """Fields explicitly present in the patch"""
        changed = self.model_dump(exclude_unset=True)
        if not changed:
            raise ValidationError("Patch contains no fields")
        nulls = sorted(name for name in changed if name in self.non_nullable and changed[name] is None)
        if nulls:
            raise ValidationError(f"Fields cannot be null: {', '.join(nulls)}")
        return changed
    
    def admin_only_fields(self) -> FrozenSet[str]:
        return frozenset(self.changes()) - self.owner_fields


class AccountPatch(PatchSchema):
    owner_fields: ClassVar[FrozenSet[str]] = frozenset({"nickname"})
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"balance"})
    
    nickname: Optional[str] = Field(None, max_length=50)
    balance: Optional[Decimal] = Field(None, ge=0)


class CardPatch(PatchSchema):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"credit_limit"})
    
    credit_limit: Optional[Decimal] = Field(None, gt=0)


class LoanPatch(PatchSchema):
    owner_fields: ClassVar[FrozenSet[str]] = frozenset({"purpose"})
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"principal", "interest_rate", "term_months"})
    
    principal: Optional[Decimal] = Field(None, ge=LOAN_MIN_PRINCIPAL, le=LOAN_MAX_PRINCIPAL)
    interest_rate: Optional[Decimal] = Field(None, ge=0, le=LOAN_MAX_INTEREST_RATE)
    term_months: Optional[int] = Field(None, ge=1, le=LOAN_MAX_TERM_MONTHS)
    purpose: Optional[str] = Field(None, max_length=255)
    admin_notes: Optional[str] = Field(None, max_length=500)


class TransferPatch(PatchSchema):
    owner_fields: ClassVar[FrozenSet[str]] = frozenset({"amount", "description", "category"})
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"amount"})
    
    amount: Optional[Decimal] = Field(None, gt=0)
    description: Optional[str] = Field(None, max_length=255)
    category: Optional[str] = Field(None, max_length=50)


SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse_fields(schema: Type[SchemaT], data: Any) -> SchemaT:
    """
    Validate raw input against a schema
    
    Raises:
        ValidationError: With one message per offending field
    """
    if isinstance(data, schema):
        return data
    if data is None:
        data = {}
    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        messages = []
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"]) or "fields"
            messages.append(f"{location}: {err['msg']}")
        raise ValidationError(f"Invalid {schema.__name__}: " + "; ".join(messages), messages)
