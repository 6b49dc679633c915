from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class PushRequest(BaseModel):
    phoneNumber: str
    amount: float
    accountReference: str


class PushResponse(BaseModel):
    status: str
    correlationId: str
    merchantRequestId: Optional[str] = None
    customerMessage: Optional[str] = None


class ConfirmRequest(BaseModel):
    transactionCode: str
    phoneNumber: str
    accountId: str
    expectedAmount: Optional[float] = None
    correlationId: Optional[str] = None


class ConfirmResponse(BaseModel):
    verified: bool
    transactionCode: Optional[str] = None
    accountId: Optional[str] = None
    created: bool = False


class ErrorResponse(BaseModel):
    error: str
    message: str


# Provider callback, as POSTed by Daraja to CallBackURL.

class CallbackItem(BaseModel):
    Name: str
    Value: Any = None


class CallbackMetadataBlock(BaseModel):
    Item: list[CallbackItem] = []


class StkCallback(BaseModel):
    MerchantRequestID: str
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: str
    CallbackMetadata: Optional[CallbackMetadataBlock] = None

    def metadata(self) -> dict:
        if not self.CallbackMetadata:
            return {}
        return {item.Name: item.Value for item in self.CallbackMetadata.Item}


class StkCallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackEnvelope(BaseModel):
    Body: StkCallbackBody


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


# Outcome of a status query, built only from a validated provider response.

class StatusPending(BaseModel):
    kind: Literal["pending"] = "pending"
    correlation_id: str
    description: Optional[str] = None


class StatusSuccess(BaseModel):
    kind: Literal["success"] = "success"
    correlation_id: str
    merchant_request_id: Optional[str] = None
    result_code: str = "0"
    description: Optional[str] = None
    transaction_code: Optional[str] = None


class StatusFailure(BaseModel):
    kind: Literal["failure"] = "failure"
    correlation_id: str
    merchant_request_id: Optional[str] = None
    result_code: str
    description: Optional[str] = None


StatusResult = Annotated[Union[StatusPending, StatusSuccess, StatusFailure], Field(discriminator="kind")]


class RefreshResponse(BaseModel):
    correlationId: str
    status: str
    outcome: StatusResult
