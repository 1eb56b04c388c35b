"""Per-method message codecs for Site Controller RPCs.

The agent builds requests and reads responses as plain dictionaries. A
codec turns those into bytes on the wire for one method at a time.

``ProtobufCodec`` speaks the controller's protobuf contract. It is built
from the service descriptor, either taken from generated stubs
(``forge_pb2.DESCRIPTOR.services_by_name["Forge"]``) or loaded from a
compiled descriptor set (``protoc --include_imports --descriptor_set_out``).
``JsonCodec`` sends JSON bodies and is meant for in-process fakes and
controllers that register a JSON codec.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from google.protobuf import descriptor_pb2, descriptor_pool, json_format, message_factory
from google.protobuf.descriptor import Descriptor, FieldDescriptor, ServiceDescriptor
from google.protobuf.message import DecodeError, Message
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Fully qualified gRPC service exposed by the Site Controller
SITE_CONTROLLER_SERVICE = "forge.Forge"

# Request key the agent uses for id lists, whatever the message calls it
ID_LIST_KEY = "ids"


class CodecError(Exception):
    """Raised when a message cannot be encoded or decoded for a method."""

    pass


@dataclass(frozen=True)
class MethodCodec:
    request_serializer: Callable[[Any], bytes]
    response_deserializer: Callable[[bytes], dict[str, Any]]


class Codec(Protocol):
    """Source of per-method serializers."""

    name: str

    def for_method(self, method: str) -> MethodCodec: ...


def request_to_dict(request: BaseModel | dict[str, Any] | None) -> dict[str, Any]:
    if request is None:
        return {}
    if isinstance(request, BaseModel):
        return request.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(request)


def _json_serialize(request: BaseModel | dict[str, Any] | None) -> bytes:
    if isinstance(request, BaseModel):
        return request.model_dump_json(by_alias=True, exclude_none=True).encode()
    return json.dumps(request_to_dict(request), default=str).encode()


def _json_deserialize(data: bytes) -> dict[str, Any]:
    if not data:
        return {}
    try:
        return json.loads(data)
    except ValueError as e:
        raise CodecError(f"Invalid JSON response: {e}") from e


_JSON_METHOD_CODEC = MethodCodec(_json_serialize, _json_deserialize)


class JsonCodec:
    """Same JSON codec for every method."""

    name = "json"

    def for_method(self, method: str) -> MethodCodec:
        return _JSON_METHOD_CODEC


def _is_message(field: FieldDescriptor) -> bool:
    return field.type == FieldDescriptor.TYPE_MESSAGE


def _is_repeated(field: FieldDescriptor) -> bool:
    return field.label == FieldDescriptor.LABEL_REPEATED


def _wrapper_field(descriptor: Descriptor) -> FieldDescriptor | None:
    """The single scalar field of a wrapper message such as ``UUID{value}``."""
    if len(descriptor.fields) != 1:
        return None
    field = descriptor.fields[0]
    if _is_message(field) or _is_repeated(field):
        return None
    return field


def _coerce_value(field: FieldDescriptor, value: Any) -> Any:
    # Well-known types have their own JSON mapping in json_format
    if not _is_message(field) or field.message_type.full_name.startswith("google.protobuf."):
        return value
    if isinstance(value, dict):
        return _coerce_message(field.message_type, value)
    wrapper = _wrapper_field(field.message_type)
    if wrapper is not None:
        return {wrapper.json_name: value}
    return value


def _coerce_message(descriptor: Descriptor, data: dict[str, Any]) -> dict[str, Any]:
    """Fit an agent-side dictionary onto ``descriptor``.

    Bare scalars become wrapper messages, and the ``ids`` key maps onto
    the message's only repeated field when it has no field of that name.
    """
    fields = {field.json_name: field for field in descriptor.fields}
    fields.update({field.name: field for field in descriptor.fields})

    data = dict(data)
    if ID_LIST_KEY in data and ID_LIST_KEY not in fields:
        repeated = [field for field in descriptor.fields if _is_repeated(field)]
        if len(repeated) == 1:
            data[repeated[0].json_name] = data.pop(ID_LIST_KEY)

    coerced: dict[str, Any] = {}
    for key, value in data.items():
        field = fields.get(key)
        if field is None:
            coerced[key] = value
        elif _is_repeated(field) and isinstance(value, list):
            coerced[key] = [_coerce_value(field, item) for item in value]
        else:
            coerced[key] = _coerce_value(field, value)
    return coerced


class ProtobufCodec:
    """Protobuf wire codec for the methods of one gRPC service."""

    name = "protobuf"

    def __init__(self, service: ServiceDescriptor) -> None:
        self._service = service
        self._codecs: dict[str, MethodCodec] = {}

    @property
    def service_name(self) -> str:
        return self._service.full_name

    @classmethod
    def from_descriptor_set(cls, path: Path, service: str = SITE_CONTROLLER_SERVICE) -> ProtobufCodec:
        """Load ``service`` from a serialized FileDescriptorSet.

        Raises:
            CodecError: If the file is unreadable, malformed or lacks the service.
        """
        try:
            file_set = descriptor_pb2.FileDescriptorSet.FromString(path.read_bytes())
        except OSError as e:
            raise CodecError(f"Unable to read descriptor set {path}: {e}") from e
        except DecodeError as e:
            raise CodecError(f"Invalid descriptor set {path}: {e}") from e

        pool = descriptor_pool.DescriptorPool()
        try:
            for file_proto in file_set.file:
                pool.Add(file_proto)
            service_descriptor = pool.FindServiceByName(service)
        except (KeyError, TypeError) as e:
            raise CodecError(f"Service {service} not found in {path}: {e}") from e

        logger.info(
            "Loaded Site Controller descriptors",
            extra={"path": str(path), "service": service, "methods": len(service_descriptor.methods)},
        )
        return cls(service_descriptor)

    def for_method(self, method: str) -> MethodCodec:
        codec = self._codecs.get(method)
        if codec is None:
            descriptor = self._service.methods_by_name.get(method)
            if descriptor is None:
                raise CodecError(f"Unknown method {self.service_name}/{method}")
            codec = MethodCodec(
                self._serializer(method, message_factory.GetMessageClass(descriptor.input_type)),
                self._deserializer(method, message_factory.GetMessageClass(descriptor.output_type)),
            )
            self._codecs[method] = codec
        return codec

    @staticmethod
    def _serializer(method: str, message_class: type[Message]) -> Callable[[Any], bytes]:
        def serialize(request: BaseModel | dict[str, Any] | None) -> bytes:
            data = _coerce_message(message_class.DESCRIPTOR, request_to_dict(request))
            try:
                message = json_format.ParseDict(data, message_class())
            except json_format.ParseError as e:
                raise CodecError(f"Cannot encode {method} request: {e}") from e
            return message.SerializeToString()

        return serialize

    @staticmethod
    def _deserializer(method: str, message_class: type[Message]) -> Callable[[bytes], dict[str, Any]]:
        def deserialize(data: bytes) -> dict[str, Any]:
            try:
                message = message_class.FromString(data)
            except DecodeError as e:
                raise CodecError(f"Cannot decode {method} response: {e}") from e
            return json_format.MessageToDict(message)

        return deserialize


def build_codec(name: str, descriptor_set_path: Path | None) -> Codec:
    """Codec for a configured name.

    Raises:
        CodecError: For an unknown name or an unusable descriptor set.
    """
    match name:
        case "json":
            return JsonCodec()
        case "protobuf":
            if descriptor_set_path is None:
                raise CodecError("A descriptor set is required for the protobuf codec")
            return ProtobufCodec.from_descriptor_set(descriptor_set_path)
        case _:
            raise CodecError(f"Unknown codec: {name}")
