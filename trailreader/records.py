"""Typed audit record structures.

Each structure is a read-only mapping from JSON field name to decoded value.
Known fields get typed properties; unknown fields stay reachable through the
mapping interface with their raw JSON text as the value.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Iterator

from trailreader.fields import RecordField

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class FieldBag(Mapping):
    """Insertion-ordered field store that becomes immutable once frozen."""

    def __init__(self, fields: dict | None = None):
        self._fields: dict[str, Any] = {}
        self._frozen = False
        for name, value in (fields or {}).items():
            self.add(name, value)

    def add(self, name: str, value: Any) -> None:
        if self._frozen:
            raise TypeError(f"{type(self).__name__} is read-only")
        self._fields[name] = value

    def freeze(self):
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __getitem__(self, name: str) -> Any:
        return self._fields[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._fields!r})"

    def __eq__(self, other) -> bool:
        if isinstance(other, FieldBag):
            return type(self) is type(other) and self._fields == other._fields
        return NotImplemented

    __hash__ = None

    def to_dict(self) -> dict:
        """Plain-JSON view: datetimes and UUIDs become strings."""
        return {name: _plain(value) for name, value in self._fields.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, FieldBag):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, datetime):
        return value.strftime(TIMESTAMP_FORMAT)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class SessionIssuer(FieldBag):
    """Identity that granted a temporary session (role or federation)."""

    @property
    def type(self) -> str | None:
        return self.get(RecordField.type.value)

    @property
    def principal_id(self) -> str | None:
        return self.get(RecordField.principalId.value)

    @property
    def arn(self) -> str | None:
        return self.get(RecordField.arn.value)

    @property
    def account_id(self) -> str | None:
        return self.get(RecordField.accountId.value)

    @property
    def user_name(self) -> str | None:
        return self.get(RecordField.userName.value)


class WebIdentitySessionContext(FieldBag):
    @property
    def attributes(self) -> Mapping[str, str | None] | None:
        return self.get(RecordField.attributes.value)

    @property
    def federated_provider(self) -> str | None:
        return self.get(RecordField.federatedProvider.value)


class SessionContext(FieldBag):
    @property
    def attributes(self) -> Mapping[str, str | None] | None:
        return self.get(RecordField.attributes.value)

    @property
    def session_issuer(self) -> SessionIssuer | None:
        return self.get(RecordField.sessionIssuer.value)

    @property
    def web_id_federation_data(self) -> WebIdentitySessionContext | None:
        return self.get(RecordField.webIdFederationData.value)


class UserIdentity(FieldBag):
    @property
    def identity_type(self) -> str | None:
        return self.get(RecordField.type.value)

    @property
    def principal_id(self) -> str | None:
        return self.get(RecordField.principalId.value)

    @property
    def arn(self) -> str | None:
        return self.get(RecordField.arn.value)

    @property
    def account_id(self) -> str | None:
        return self.get(RecordField.accountId.value)

    @property
    def access_key_id(self) -> str | None:
        return self.get(RecordField.accessKeyId.value)

    @property
    def user_name(self) -> str | None:
        return self.get(RecordField.userName.value)

    @property
    def invoked_by(self) -> str | None:
        return self.get(RecordField.invokedBy.value)

    @property
    def session_context(self) -> SessionContext | None:
        return self.get(RecordField.sessionContext.value)


class Resource(FieldBag):
    """Event-dependent bag of fields, all kept as raw text."""

    @property
    def arn(self) -> str | None:
        return self.get(RecordField.ARN.value)

    @property
    def account_id(self) -> str | None:
        return self.get(RecordField.accountId.value)

    @property
    def type(self) -> str | None:
        return self.get(RecordField.type.value)


class Record(FieldBag):
    """One audit event.

    ``record.read_only is None`` cannot tell an explicit JSON null from a
    missing field; use ``"readOnly" in record`` for that. The same holds for
    ``resources``.
    """

    @property
    def event_version(self) -> str | None:
        return self.get(RecordField.eventVersion.value)

    @property
    def user_identity(self) -> UserIdentity | None:
        return self.get(RecordField.userIdentity.value)

    @property
    def event_time(self) -> datetime | None:
        return self.get(RecordField.eventTime.value)

    @property
    def event_source(self) -> str | None:
        return self.get(RecordField.eventSource.value)

    @property
    def event_name(self) -> str | None:
        return self.get(RecordField.eventName.value)

    @property
    def aws_region(self) -> str | None:
        return self.get(RecordField.awsRegion.value)

    @property
    def source_ip_address(self) -> str | None:
        return self.get(RecordField.sourceIPAddress.value)

    @property
    def user_agent(self) -> str | None:
        return self.get(RecordField.userAgent.value)

    @property
    def request_parameters(self) -> str | None:
        return self.get(RecordField.requestParameters.value)

    @property
    def response_elements(self) -> str | None:
        return self.get(RecordField.responseElements.value)

    @property
    def request_id(self) -> uuid.UUID | None:
        return self.get(RecordField.requestID.value)

    @property
    def event_id(self) -> uuid.UUID | None:
        return self.get(RecordField.eventID.value)

    @property
    def event_type(self) -> str | None:
        return self.get(RecordField.eventType.value)

    @property
    def error_code(self) -> str | None:
        return self.get(RecordField.errorCode.value)

    @property
    def error_message(self) -> str | None:
        return self.get(RecordField.errorMessage.value)

    @property
    def recipient_account_id(self) -> str | None:
        return self.get(RecordField.recipientAccountId.value)

    @property
    def read_only(self) -> bool | None:
        return self.get(RecordField.readOnly.value)

    @property
    def resources(self) -> tuple[Resource, ...] | None:
        return self.get(RecordField.resources.value)

    @property
    def account_id(self) -> str | None:
        return self.get(RecordField.accountId.value)

    @property
    def api_version(self) -> str | None:
        return self.get(RecordField.apiVersion.value)

    @property
    def shared_event_id(self) -> str | None:
        return self.get(RecordField.sharedEventID.value)

    @property
    def vpc_endpoint_id(self) -> str | None:
        return self.get(RecordField.vpcEndpointId.value)

    @property
    def additional_event_data(self) -> str | None:
        return self.get(RecordField.additionalEventData.value)

    @property
    def service_event_details(self) -> str | None:
        return self.get(RecordField.serviceEventDetails.value)

    @property
    def event_category(self) -> str | None:
        return self.get(RecordField.eventCategory.value)

    @property
    def management_event(self) -> str | None:
        return self.get(RecordField.managementEvent.value)
