"""Pydantic models for the event-stream APIs."""
from __future__ import annotations

from pydantic import BaseModel, Field


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)


class BroadcastResponse(BaseModel):
    status: str
    message: str
    sent_to: int = Field(serialization_alias="sentTo")
    failed: int
    total: int
    total_clients: int = Field(serialization_alias="totalClients")


class SendResponse(BaseModel):
    status: str
    message: str


class ClientsResponse(BaseModel):
    connected_clients: int = Field(serialization_alias="connectedClients")
    client_ids: list[str] = Field(default_factory=list, serialization_alias="clientIds")
