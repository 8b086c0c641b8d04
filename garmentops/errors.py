class GarmentOpsError(Exception):
    """Base class for errors raised by the store and the model gateway."""


class StoreError(GarmentOpsError):
    pass


class RequestNotFound(StoreError):
    def __init__(self, request_id: str):
        super().__init__(f"Request not found: {request_id}")
        self.request_id = request_id


class ModelGatewayError(GarmentOpsError):
    pass
