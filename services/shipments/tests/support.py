from app.infrastructure.auth import Actor, create_access_token
from app.infrastructure.notifications import StatusNotifier

CUSTOMER = Actor(id="customer-1")
OTHER_CUSTOMER = Actor(id="customer-2")
ADMIN = Actor(id="admin-1", roles=frozenset({"admin"}))


class RecordingNotifier(StatusNotifier):
    def __init__(self):
        super().__init__()
        self.sent = []

    def notify(self, shipment):
        self.sent.append(shipment)
        return None


def booking_payload(**overrides):
    payload = {
        "booking_reference_id": "REF-0001",
        "recipient_name": "Asha Rao",
        "recipient_phone": "+919876543210",
        "recipient_email": "asha@example.com",
        "origin_address": "12 MG Road, Bengaluru",
        "destination_address": "221B Baker Street, London",
        "destination_country": "United Kingdom",
        "weight_kg": 2.5,
        "declared_value": 1500,
        "shipment_type": "document",
    }
    payload.update(overrides)
    return payload


def token_for(actor: Actor) -> str:
    return create_access_token(actor.id, roles=actor.roles)


def headers_for(actor: Actor):
    return {"Authorization": f"Bearer {token_for(actor)}"}
