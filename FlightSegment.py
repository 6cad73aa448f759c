from dataclasses import dataclass
from typing import Optional

from dataclasses_json import dataclass_json

GENERIC_FLIGHTS_URL = "https://www.google.com/travel/flights"


@dataclass_json
@dataclass
class SegmentRequest:
    origin_city: str
    destination_city: str
    date: str  # YYYY-MM-DD
    origin_iata: Optional[str] = None  # pre-resolved override
    destination_iata: Optional[str] = None
    passengers: int = 1


@dataclass_json
@dataclass
class FlightOffer:
    id: str
    total_amount: float
    currency: str
    carrier: str
    carrier_name: str
    flight_number: str
    origin: str
    destination: str
    departing_at: str
    arriving_at: str
    duration_minutes: int = 0


@dataclass_json
@dataclass
class FlightSegment:
    origin_city: str
    destination_city: str
    date: str
    origin_iata: Optional[str] = None
    destination_iata: Optional[str] = None
    status: str = "suggested"  # suggested, searching, available, unavailable
    cheapest_offer: Optional[FlightOffer] = None
    deep_link_url: str = GENERIC_FLIGHTS_URL
    passengers: int = 1
    connection_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_request(cls, req: SegmentRequest, **overrides) -> "FlightSegment":
        values = dict(
            origin_city=req.origin_city,
            destination_city=req.destination_city,
            date=req.date,
            origin_iata=req.origin_iata,
            destination_iata=req.destination_iata,
            passengers=req.passengers,
        )
        values.update(overrides)
        return cls(**values)

    def is_resolved(self) -> bool:
        """Both endpoints have an airport code."""
        return bool(self.origin_iata and self.destination_iata)

    def route_label(self) -> str:
        origin = self.origin_iata or self.origin_city
        destination = self.destination_iata or self.destination_city
        return f"{origin}→{destination}"

    def connection_data(self) -> dict:
        """Payload stored on the ``connections`` row for this segment."""
        data = {
            "origin_city": self.origin_city,
            "destination_city": self.destination_city,
            "origin_iata": self.origin_iata,
            "destination_iata": self.destination_iata,
            "date": self.date,
        }
        if self.cheapest_offer is not None:
            data["offer"] = self.cheapest_offer.to_dict()
        elif self.error:
            data["note"] = self.error
        return data
