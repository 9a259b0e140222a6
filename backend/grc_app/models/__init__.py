from .parties import Merchant, Member
from .certificates import (
    Certificate,
    CertificatePurchase,
    CertificateQueueEntry,
    CERTIFICATE_STATUSES,
    TERMINAL_CERTIFICATE_STATUSES,
    PAYMENT_METHODS,
    PAYMENT_STATUSES,
)
from .receipts import Receipt, RECEIPT_STATUSES
from .qualifications import MonthlyQualification, Survey, SurveyResponse, MerchantReview, QUALIFICATION_STATUSES
from .events import DomainEvent

__all__ = [
    'Merchant', 'Member',
    'Certificate', 'CertificatePurchase', 'CertificateQueueEntry',
    'CERTIFICATE_STATUSES', 'TERMINAL_CERTIFICATE_STATUSES', 'PAYMENT_METHODS', 'PAYMENT_STATUSES',
    'Receipt', 'RECEIPT_STATUSES',
    'MonthlyQualification', 'Survey', 'SurveyResponse', 'MerchantReview', 'QUALIFICATION_STATUSES',
    'DomainEvent',
]
