from enum import Enum
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActionKind(str, Enum):
    GENESIS = 'GENESIS'
    INVENTORY_IN = 'INVENTORY_IN'
    INVENTORY_OUT = 'INVENTORY_OUT'
    ADJUSTMENT = 'ADJUSTMENT'
    NEW_ITEM = 'NEW_ITEM'
    DELETE_ITEM = 'DELETE_ITEM'
    PRODUCTION = 'PRODUCTION'
    EMPLOYEE_ADD = 'EMPLOYEE_ADD'
    EMPLOYEE_REMOVE = 'EMPLOYEE_REMOVE'


# Ledger schemas
class ActionData(BaseModel):
    # field order is the hashed key order
    action: str
    details: str
    user: str

    model_config = ConfigDict(frozen=True)

    @field_validator('action', mode='before')
    @classmethod
    def _enum_to_label(cls, value):
        if isinstance(value, Enum):
            return value.value
        return value


class Block(BaseModel):
    index: int = Field(ge=0)
    timestamp: str
    data: ActionData
    previous_hash: str = Field(alias='previousHash')
    hash: str

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ValidationResult(BaseModel):
    valid: bool
    broken_at_index: Optional[int] = Field(default=None, alias='brokenAtIndex')

    model_config = ConfigDict(frozen=True, populate_by_name=True)


# Brewery (tenant) schemas
class BreweryCreate(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    name: Optional[str] = None
    username: str = Field(min_length=1)


class BreweryOut(BaseModel):
    id: str
    name: Optional[str]
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class BreweryCreated(BaseModel):
    brewery: BreweryOut
    genesis: Block
    access_token: str
    token_type: str = 'bearer'


# Request bodies
class ActionCreate(BaseModel):
    action: ActionKind
    details: str


class InventoryMovement(BaseModel):
    item_name: str = Field(min_length=1)
    change: float
    reason: str = ''


class LedgerImport(BaseModel):
    blocks: List[Block]


class LedgerImportResult(BaseModel):
    inserted: int
    skipped: int
