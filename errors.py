"""
Typed failures raised by the services.

Every failure carries a stable ``code`` (the class name) so the HTTP layer can
translate it without inspecting messages. Callers branch on the kinds
below; the named subclasses exist for precise reporting.
"""


class LedgerError(Exception):
    code = "LedgerError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.code = cls.__name__


# ---------- Kinds ----------
class ValidationError(LedgerError):
    pass

class NotFoundError(LedgerError):
    pass

class ConflictError(LedgerError):
    pass

class AuthorizationError(LedgerError):
    pass

class AuthenticationError(LedgerError):
    pass

class TransientStoreError(LedgerError):
    pass


# ---------- Validation ----------
class InvalidRole(ValidationError):
    pass

class InvalidAttributes(ValidationError):
    pass

class InvalidQuantity(ValidationError):
    pass

class FutureHarvestDate(ValidationError):
    pass

class SelfMessage(ValidationError):
    pass

class InvalidStatus(ValidationError):
    pass


# ---------- Not found ----------
class UserNotFound(NotFoundError):
    pass

class OwnerNotFound(NotFoundError):
    pass

class FarmNotFound(NotFoundError):
    pass

class InventoryNotFound(NotFoundError):
    pass

class ListingNotFound(NotFoundError):
    pass

class TransactionNotFound(NotFoundError):
    pass

class LogisticsNotFound(NotFoundError):
    pass

class MessageNotFound(NotFoundError):
    pass


# ---------- Conflicts ----------
class DuplicateEmail(ConflictError):
    pass

class InvalidTransition(ConflictError):
    pass

class ListingNotOpen(ConflictError):
    pass

class ExceedsListingValue(ConflictError):
    pass

class ListingHasActiveTransactions(ConflictError):
    pass

class TransactionNotPaid(ConflictError):
    pass

class LogisticsAlreadyExists(ConflictError):
    pass

class InsufficientQuantity(ConflictError):
    pass

class HasDependents(ConflictError):
    pass


# ---------- Authorization / authentication ----------
class NotReceiver(AuthorizationError):
    pass

class NotListingOwner(AuthorizationError):
    pass

class NotInventoryOwner(AuthorizationError):
    pass

class NotFarmOwner(AuthorizationError):
    pass

class NotTransactionParty(AuthorizationError):
    pass

class InvalidCredentials(AuthenticationError):
    pass
