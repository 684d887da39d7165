from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from storefront.models import OrderStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class LoginBody(CamelModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class CjSettingsBody(CamelModel):
    email: str | None = None
    api_key: str | None = Field(default=None, alias='apiKey')
    base: str | None = None


class AdminSettingsBody(CamelModel):
    kill_switch: bool | None = Field(default=None, alias='killSwitch')
    operating_mode: str | None = Field(default=None, alias='operatingMode')


class JobActionBody(CamelModel):
    action: Literal['cancel']


class JobRunBody(CamelModel):
    mode: Literal['step', 'all'] = 'step'
    steps: int = 1


class UpsertOptionsBody(CamelModel):
    update_images: bool = Field(default=False, alias='updateImages')
    update_video: bool = Field(default=False, alias='updateVideo')
    update_price: bool = Field(default=False, alias='updatePrice')


class ResyncBody(UpsertOptionsBody):
    limit: int = Field(default=100, ge=1, le=500)


class JobImportBody(UpsertOptionsBody):
    item_ids: list[int] | None = Field(default=None, alias='itemIds')
    update_images: bool = Field(default=True, alias='updateImages')
    update_video: bool = Field(default=True, alias='updateVideo')
    update_price: bool = Field(default=True, alias='updatePrice')


class OrderStatusBody(CamelModel):
    status: OrderStatus


class ShippingBody(CamelModel):
    name: str | None = None
    phone: str | None = None
    country_code: str | None = Field(default=None, alias='countryCode')
    country: str | None = None
    province: str | None = None
    city: str | None = None
    address1: str | None = None
    address2: str | None = None
    zip: str | None = None


class FulfillBody(CamelModel):
    shipping: ShippingBody | None = None


class BatchBody(CamelModel):
    limit: int = Field(default=20, ge=1, le=500)


class ShippingCalcBody(CamelModel):
    country_code: str = Field(alias='countryCode', min_length=2, max_length=2)
    zip: str | None = None
    quantity: int = Field(default=1, ge=1, le=99)
    pid: str | None = None
    sku: str | None = None
    vid: str | None = None
    weight_gram: float | None = Field(default=None, alias='weightGram', ge=0)
