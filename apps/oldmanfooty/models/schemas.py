"""
Pydantic models for API request/response validation.

Request bodies stay permissive about formats; the service layer owns the
domain validation and reports it as a Validation error.
"""

import datetime as dt
from typing import List, Optional
from pydantic import BaseModel


# --- Auth ---


class RegisterUserRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    password: str
    phone_number: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class InviteDelegateRequest(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AcceptInvitationRequest(BaseModel):
    first_name: str
    last_name: str
    password: str


class TransferPrimaryDelegateRequest(BaseModel):
    new_primary_user_id: int


# --- Clubs ---


class ClubCreate(BaseModel):
    club_name: str
    state: Optional[str] = None
    location: Optional[str] = None
    contact_person: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    logo_url: Optional[str] = None
    is_publicly_listed: bool = True


class ProxyClubCreate(BaseModel):
    club_name: str
    contact_email: str
    state: Optional[str] = None
    location: Optional[str] = None
    contact_person: Optional[str] = None
    contact_phone: Optional[str] = None


class AlternateNameRequest(BaseModel):
    alternate_name: str


# --- Carnivals ---


class CarnivalFields(BaseModel):
    """Carnival details; every field optional so the model also serves partial updates."""

    title: Optional[str] = None
    date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    state: Optional[str] = None
    venue_name: Optional[str] = None
    location_address: Optional[str] = None
    location_address_line1: Optional[str] = None
    location_address_line2: Optional[str] = None
    location_suburb: Optional[str] = None
    location_postcode: Optional[str] = None
    location_latitude: Optional[float] = None
    location_longitude: Optional[float] = None
    organiser_contact_name: Optional[str] = None
    organiser_contact_email: Optional[str] = None
    organiser_contact_phone: Optional[str] = None
    schedule_details: Optional[str] = None
    registration_link: Optional[str] = None
    fees_description: Optional[str] = None
    social_media_facebook: Optional[str] = None
    social_media_website: Optional[str] = None
    club_logo_url: Optional[str] = None
    max_teams: Optional[int] = None
    registration_deadline: Optional[dt.datetime] = None


class CarnivalCreate(CarnivalFields):
    title: str
    date: dt.date
    club_id: Optional[int] = None


class ClaimCarnivalRequest(CarnivalFields):
    club_id: Optional[int] = None


class MergeCarnivalRequest(BaseModel):
    target_carnival_id: int


class ScrapedCarnivalRequest(CarnivalFields):
    external_id: str
    club_name: Optional[str] = None


class BroadcastRequest(BaseModel):
    subject: str
    message: str


# --- Registrations ---


class RegistrationDetails(BaseModel):
    team_name: Optional[str] = None
    player_count: Optional[int] = None
    contact_person: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    special_requirements: Optional[str] = None
    registration_notes: Optional[str] = None


class HostAddClubRequest(RegistrationDetails):
    club_id: int


class RejectRegistrationRequest(BaseModel):
    reason: Optional[str] = None


class ReorderRequest(BaseModel):
    ordered_ids: List[int]


class PaymentUpdate(BaseModel):
    is_paid: bool
    payment_amount: Optional[float] = None


# --- Players ---


class PlayerCreate(BaseModel):
    first_name: str
    last_name: str
    email: str
    date_of_birth: dt.date
    shorts: Optional[str] = None
    notes: Optional[str] = None


class PlayerUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    date_of_birth: Optional[dt.date] = None
    shorts: Optional[str] = None
    notes: Optional[str] = None


class MovePlayerRequest(BaseModel):
    club_id: int


class AttachPlayersRequest(BaseModel):
    player_ids: List[int]


class AttendanceUpdate(BaseModel):
    status: str
    notes: Optional[str] = None


# --- Subscriptions ---


class SubscribeRequest(BaseModel):
    email: str
    states: List[str]
    source: Optional[str] = "homepage"
