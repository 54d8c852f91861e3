"""Field registry: known audit-record field names and how each value is decoded.

Every structure in a record has its own case table mapping a field name to a
``FieldKind``. A name missing from the table decodes as ``FieldKind.DEFAULT``,
which keeps the value as raw JSON text, so fields added by the producer never
break decoding.
"""

from enum import Enum


class FieldKind(Enum):
    DEFAULT = "default"            # passthrough, JSON text
    TEXT = "text"                  # scalar rendered as str
    VERSION = "version"            # text plus supported-version check
    TIMESTAMP = "timestamp"        # %Y-%m-%dT%H:%M:%SZ, UTC
    UUID = "uuid"
    BOOLEAN = "boolean"            # true/false/null
    USER_IDENTITY = "userIdentity"
    SESSION_CONTEXT = "sessionContext"
    SESSION_ISSUER = "sessionIssuer"
    WEB_IDENTITY = "webIdFederationData"
    ATTRIBUTES = "attributes"
    RESOURCES = "resources"


class RecordField(str, Enum):
    """JSON field names the client knows about."""

    # record
    eventVersion = "eventVersion"
    userIdentity = "userIdentity"
    eventTime = "eventTime"
    eventSource = "eventSource"
    eventName = "eventName"
    awsRegion = "awsRegion"
    sourceIPAddress = "sourceIPAddress"
    userAgent = "userAgent"
    requestParameters = "requestParameters"
    responseElements = "responseElements"
    requestID = "requestID"
    eventID = "eventID"
    eventType = "eventType"
    errorCode = "errorCode"
    errorMessage = "errorMessage"
    recipientAccountId = "recipientAccountId"
    readOnly = "readOnly"
    resources = "resources"
    apiVersion = "apiVersion"
    sharedEventID = "sharedEventID"
    vpcEndpointId = "vpcEndpointId"
    additionalEventData = "additionalEventData"
    serviceEventDetails = "serviceEventDetails"
    eventCategory = "eventCategory"
    managementEvent = "managementEvent"

    # identity
    type = "type"
    principalId = "principalId"
    arn = "arn"
    accountId = "accountId"
    accessKeyId = "accessKeyId"
    userName = "userName"
    invokedBy = "invokedBy"
    sessionContext = "sessionContext"

    # session context
    attributes = "attributes"
    sessionIssuer = "sessionIssuer"
    webIdFederationData = "webIdFederationData"
    federatedProvider = "federatedProvider"

    # resource
    ARN = "ARN"


RECORD_FIELDS: dict[str, FieldKind] = {
    RecordField.eventVersion.value: FieldKind.VERSION,
    RecordField.userIdentity.value: FieldKind.USER_IDENTITY,
    RecordField.eventTime.value: FieldKind.TIMESTAMP,
    RecordField.eventID.value: FieldKind.UUID,
    RecordField.requestID.value: FieldKind.UUID,
    RecordField.readOnly.value: FieldKind.BOOLEAN,
    RecordField.resources.value: FieldKind.RESOURCES,
}

USER_IDENTITY_FIELDS: dict[str, FieldKind] = {
    RecordField.type.value: FieldKind.TEXT,
    RecordField.principalId.value: FieldKind.TEXT,
    RecordField.arn.value: FieldKind.TEXT,
    RecordField.accountId.value: FieldKind.TEXT,
    RecordField.accessKeyId.value: FieldKind.TEXT,
    RecordField.userName.value: FieldKind.TEXT,
    RecordField.invokedBy.value: FieldKind.TEXT,
    RecordField.sessionContext.value: FieldKind.SESSION_CONTEXT,
}

SESSION_CONTEXT_FIELDS: dict[str, FieldKind] = {
    RecordField.attributes.value: FieldKind.ATTRIBUTES,
    RecordField.sessionIssuer.value: FieldKind.SESSION_ISSUER,
    RecordField.webIdFederationData.value: FieldKind.WEB_IDENTITY,
}

SESSION_ISSUER_FIELDS: dict[str, FieldKind] = {
    RecordField.type.value: FieldKind.TEXT,
    RecordField.principalId.value: FieldKind.TEXT,
    RecordField.arn.value: FieldKind.TEXT,
    RecordField.accountId.value: FieldKind.TEXT,
    RecordField.userName.value: FieldKind.TEXT,
}

WEB_IDENTITY_FIELDS: dict[str, FieldKind] = {
    RecordField.attributes.value: FieldKind.ATTRIBUTES,
    RecordField.federatedProvider.value: FieldKind.TEXT,
}

# Resource layout depends on the event; everything is passthrough.
RESOURCE_FIELDS: dict[str, FieldKind] = {}


def field_kind(table: dict[str, FieldKind], name: str) -> FieldKind:
    """Look up *name* in a case table, falling back to passthrough."""
    return table.get(name, FieldKind.DEFAULT)
