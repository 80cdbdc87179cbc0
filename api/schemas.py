from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class RegisterRequest(BaseModel):
    username: str | None = None
    email: str | None = None
    password: str | None = None


class LoginRequest(BaseModel):
    username: str | None = None
    password: str | None = None


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str | None = Field(default=None, alias="currentPassword")
    new_password: str | None = Field(default=None, alias="newPassword")


class EmailRequest(BaseModel):
    email: str | None = None


class CategoryCreateRequest(BaseModel):
    name: str | None = None
    type: str | None = None
    color: str | None = None
    parent_id: int | None = None


class CategoryUpdateRequest(BaseModel):
    name: str | None = None
    type: str | None = None
    color: str | None = None


class TransactionRequest(BaseModel):
    amount: Decimal | None = None
    description: str | None = None
    category_id: int | None = None
    type: str | None = None
    date: str | None = None
    account: str | None = None
    card: str | None = None
    memo: str | None = None
    asset_id: int | None = None


class InitialBalanceRequest(BaseModel):
    amount: Decimal | None = None


class AssetRequest(BaseModel):
    name: str | None = None
    asset_type_id: int | None = None
    amount: Decimal | None = None
    description: str | None = None


class AssetTypeRequest(BaseModel):
    name: str | None = None
    icon: str | None = None
    color: str | None = None
    description: str | None = None


class MemoRequest(BaseModel):
    title: str | None = None
    content: str | None = None
    date: str | None = None
    priority: str | None = None
    visibility: str | None = None
    is_completed: bool | None = None
