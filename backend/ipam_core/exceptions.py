from fastapi import HTTPException, status


class IPAMError(Exception):
    """Base exception for the IPAM engine"""
    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=self.message
        )


class ResourceNotFoundError(IPAMError):
    def __init__(self, resource_type: str, resource_id: any):
        super().__init__(f"{resource_type} not found: {resource_id}")
        self.resource_type = resource_type
        self.resource_id = resource_id

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=self.message
        )


class DuplicateResourceError(IPAMError):
    def __init__(self, resource_type: str, identifier: any):
        super().__init__(f"{resource_type} already exists: {identifier}")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=self.message
        )


class ValidationError(IPAMError):
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, details)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=self.message
        )


class InvalidAddressError(ValidationError):
    """Malformed address text. Always a caller input bug."""
    def __init__(self, address: any, details: dict = None):
        super().__init__(f"Invalid IP address format: {address}", details)
        self.address = address


class InvalidCIDRError(ValidationError):
    def __init__(self, cidr: str, details: dict = None):
        super().__init__(f"Invalid CIDR format: {cidr}", details)


class InvalidPrefixError(ValidationError):
    def __init__(self, prefix: any, family: str):
        super().__init__(
            f"Invalid prefix length {prefix} for {family}",
            {"prefix": prefix, "family": family}
        )


class FamilyMismatchError(ValidationError):
    def __init__(self, address: str, expected: str, actual: str):
        super().__init__(
            f"Address {address} is {actual} but the subnet is {expected}",
            {"address": address, "expected": expected, "actual": actual}
        )


class OutOfRangeError(ValidationError):
    def __init__(self, address: str, cidr: str):
        super().__init__(
            f"Address {address} is outside the usable range of {cidr}",
            {"address": address, "cidr": cidr}
        )


class InvalidOrderError(ValidationError):
    def __init__(self, start: str, end: str):
        super().__init__(
            f"Start address {start} must be less than or equal to end address {end}",
            {"start": start, "end": end}
        )


class AlreadyOccupiedError(IPAMError):
    def __init__(self, address: str, current_status: str = None, details: dict = None):
        message = f"Address {address} is already in use"
        if current_status:
            message += f" (status: {current_status})"
        super().__init__(message, details)
        self.address = address

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=self.message
        )


class RangeConflictError(IPAMError):
    def __init__(self, start: str, end: str, conflicts: list):
        super().__init__(
            f"Range {start}-{end} conflicts with addresses already in use",
            {"conflicts": conflicts}
        )
        self.conflicts = conflicts

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": self.message, "conflicts": self.conflicts}
        )


class SearchBudgetExceededError(IPAMError):
    """The bounded scan ran out of candidates before finding a gap.

    This does not mean the subnet is exhausted, only that no free address
    was found among the first `budget` candidates.
    """
    def __init__(self, subnet_id: int, cidr: str, budget: int):
        super().__init__(
            f"No available address found in {cidr} (ID: {subnet_id}) within a search budget of {budget}",
            {"subnet_id": subnet_id, "cidr": cidr, "budget": budget}
        )

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=self.message
        )


class SubnetFullError(IPAMError):
    def __init__(self, subnet_id: int, cidr: str):
        super().__init__(f"No available IPs in subnet {cidr} (ID: {subnet_id})")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_507_INSUFFICIENT_STORAGE,
            detail=self.message
        )


class InvalidTransitionError(IPAMError):
    def __init__(self, current: str, target: str, via: str):
        super().__init__(
            f"Cannot move address from {current} to {target} via {via}",
            {"current": current, "target": target, "via": via}
        )

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=self.message
        )


class StoreConflictError(IPAMError):
    """The store's uniqueness constraint rejected a write.

    Raised by the record store and handled inside the engine; callers of the
    engine never see it.
    """
    def __init__(self, address: str):
        super().__init__(f"Concurrent write conflict on address {address}", {"address": address})
        self.address = address
