from .errors import (
    AuthFailure,
    FailureKind,
    FetchResult,
    IngestError,
    NetworkFailure,
    ParseFailure,
    RegistrationError,
    SignatureFailure,
)
from .profile import ConfigType, HY2_SCHEME, Profile
from .subscription import SubscriptionItem, UserCredentials

__all__ = [
    'AuthFailure',
    'ConfigType',
    'FailureKind',
    'FetchResult',
    'HY2_SCHEME',
    'IngestError',
    'NetworkFailure',
    'ParseFailure',
    'Profile',
    'RegistrationError',
    'SignatureFailure',
    'SubscriptionItem',
    'UserCredentials',
]
