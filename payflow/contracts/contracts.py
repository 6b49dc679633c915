from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from payflow.config import settings


class TokenResponse(BaseModel):
    access_token: str
    expires_in: int

    @field_validator("access_token")
    @classmethod
    def _token_present(cls, value: str) -> str:
        if not value:
            raise ValueError("empty access_token")
        return value


class StkPushPayload(BaseModel):
    BusinessShortCode: str
    Password: str
    Timestamp: str
    TransactionType: str = "CustomerPayBillOnline"
    Amount: int
    PartyA: str
    PartyB: str
    PhoneNumber: str
    CallBackURL: str
    AccountReference: str
    TransactionDesc: str

    @classmethod
    def build(cls, phone_number: str, amount: int, account_reference: str, password: str, timestamp: str) -> "StkPushPayload":
        return cls(
            BusinessShortCode=settings.mpesa_business_short_code,
            Password=password,
            Timestamp=timestamp,
            Amount=amount,
            PartyA=phone_number,
            PartyB=settings.mpesa_business_short_code,
            PhoneNumber=phone_number,
            CallBackURL=str(settings.mpesa_callback_url),
            AccountReference=account_reference[:12],  # Daraja caps AccountReference at 12 characters
            TransactionDesc=settings.transaction_desc,
        )


class StkPushResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    MerchantRequestID: str
    CheckoutRequestID: str
    ResponseCode: str
    ResponseDescription: Optional[str] = None
    CustomerMessage: Optional[str] = None


class StkQueryPayload(BaseModel):
    BusinessShortCode: str
    Password: str
    Timestamp: str
    CheckoutRequestID: str

    @classmethod
    def build(cls, correlation_id: str, password: str, timestamp: str) -> "StkQueryPayload":
        return cls(
            BusinessShortCode=settings.mpesa_business_short_code,
            Password=password,
            Timestamp=timestamp,
            CheckoutRequestID=correlation_id,
        )


class StkQueryResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    ResponseCode: str
    ResponseDescription: Optional[str] = None
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: str
    ResultDesc: Optional[str] = None


class ProviderError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requestId: Optional[str] = None
    errorCode: str
    errorMessage: Optional[str] = None
