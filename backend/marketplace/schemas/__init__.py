from .user import UserBase, UserResponse, Token, TokenData, RefreshRequest
from .booking import (
    BookingBase,
    BookingCreate,
    BookingResponse,
    ProposalPayload,
    TransitionRequest,
    ReviewableResponse,
    ConversationResponse,
)
from .review import ReviewBase, ReviewCreate, ReviewResponse
from .payment import (
    PaymentAuthorizeRequest,
    PaymentAuthorizeResponse,
    PaymentCaptureRequest,
    PaymentCaptureResponse,
    PaymentRefundRequest,
    PaymentRefundResponse,
)
