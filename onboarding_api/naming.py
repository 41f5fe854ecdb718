import json
import re
from typing import Any, Dict, List

from .errors import ValidationError

THING_PREFIX = "thing-"
POLICY_PREFIX = "pol-"
MAX_THING_NAME = 128
MAX_POLICY_NAME = 128
TOPIC_ATTRIBUTE = "topicNamespace"

_GROUP_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_SERIAL_RE = re.compile(r"^[A-Za-z0-9:_-]{1,64}$")
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._:-]+$")


def validate_device_group(device_group: str) -> str:
    value = str(device_group or "").strip()
    if not _GROUP_RE.match(value):
        raise ValidationError("deviceGroup must be 1-64 characters of letters, digits, '_' or '-'")
    return value


def validate_serial_number(serial_number: str) -> str:
    value = str(serial_number or "").strip()
    if not _SERIAL_RE.match(value):
        raise ValidationError("serialNumber must be 1-64 characters of letters, digits, ':', '_' or '-'")
    return value


def topic_segments(topic: str) -> List[str]:
    value = str(topic or "").strip()
    if not value:
        raise ValidationError("topicNamespace is required")
    if "#" in value or "+" in value:
        raise ValidationError("topicNamespace must not contain MQTT wildcards")
    segments = value.split("/")
    if any(not segment for segment in segments):
        raise ValidationError("topicNamespace must not contain empty segments")
    for segment in segments:
        if not _SEGMENT_RE.match(segment):
            raise ValidationError(f"topicNamespace segment {segment!r} has invalid characters")
    return segments


def group_topic_prefix(topic_root: str, device_group: str) -> str:
    root = topic_root.strip("/")
    return f"{root}/{device_group}" if root else device_group


def validate_topic_namespace(topic_namespace: str, *, topic_root: str, device_group: str) -> str:
    segments = topic_segments(topic_namespace)
    value = "/".join(segments)
    prefix = group_topic_prefix(topic_root, device_group)
    if not value.startswith(prefix + "/"):
        raise ValidationError(f"topicNamespace must be under {prefix}/")
    return value


def thing_name(device_group: str, serial_number: str) -> str:
    validate_device_group(device_group)
    name = f"{THING_PREFIX}{validate_serial_number(serial_number)}"
    if len(name) > MAX_THING_NAME:
        raise ValidationError("registry entry name too long")
    return name


def policy_name(device_group: str, topic_namespace: str) -> str:
    group = validate_device_group(device_group)
    root_segment = topic_segments(topic_namespace)[0]
    safe_segment = re.sub(r"[^A-Za-z0-9_-]+", "-", root_segment).strip("-") or "topic"
    name = f"{POLICY_PREFIX}{group}-{safe_segment}"
    if len(name) > MAX_POLICY_NAME:
        raise ValidationError("policy name too long")
    return name


def policy_document(*, region: str = "*", account_id: str = "*") -> Dict[str, Any]:
    """Group policy whose topic grants resolve per connection.

    The namespace comes from the connected thing's ``topicNamespace``
    attribute, so devices sharing the policy cannot reach each other's topics.
    """
    region = region or "*"
    account_id = account_id or "*"
    base = f"arn:aws:iot:{region}:{account_id}"
    namespace = f"${{iot:Connection.Thing.Attributes[{TOPIC_ATTRIBUTE}]}}"
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["iot:Connect"],
                "Resource": [f"{base}:client/${{iot:Connection.Thing.ThingName}}"],
            },
            {
                "Effect": "Allow",
                "Action": ["iot:Publish", "iot:Receive"],
                "Resource": [f"{base}:topic/{namespace}", f"{base}:topic/{namespace}/*"],
            },
            {
                "Effect": "Allow",
                "Action": ["iot:Subscribe"],
                "Resource": [f"{base}:topicfilter/{namespace}", f"{base}:topicfilter/{namespace}/*"],
            },
        ],
    }


def policy_document_json(**kwargs: Any) -> str:
    return json.dumps(policy_document(**kwargs), sort_keys=True, separators=(",", ":"))
