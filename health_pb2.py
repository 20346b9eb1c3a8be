"""
Message classes for proto/health.proto.

The file descriptor is assembled with descriptor_pb2 and registered in the
default pool, so server reflection can serve it like any protoc output.
"""

from google.protobuf import descriptor_pb2
from google.protobuf import descriptor_pool
from google.protobuf import message_factory


def _build_file_descriptor_proto():
    file_proto = descriptor_pb2.FileDescriptorProto(name='health.proto', package='health', syntax='proto3')

    file_proto.message_type.add(name='HealthCheckRequest')

    response = file_proto.message_type.add(name='HealthCheckResponse')
    for number, name, json_name in ((1, 'cpu_usage_percent', 'cpuUsagePercent'), (2, 'memory_usage_percent', 'memoryUsagePercent')):
        response.field.add(
            name=name,
            number=number,
            json_name=json_name,
            type=descriptor_pb2.FieldDescriptorProto.TYPE_FLOAT,
            label=descriptor_pb2.FieldDescriptorProto.LABEL_OPTIONAL,
        )

    service = file_proto.service.add(name='HealthService')
    service.method.add(name='Check', input_type='.health.HealthCheckRequest', output_type='.health.HealthCheckResponse')
    return file_proto


_pool = descriptor_pool.Default()
_pool.AddSerializedFile(_build_file_descriptor_proto().SerializeToString())

DESCRIPTOR = _pool.FindFileByName('health.proto')
SERVICE_NAME = DESCRIPTOR.services_by_name['HealthService'].full_name

HealthCheckRequest = message_factory.GetMessageClass(DESCRIPTOR.message_types_by_name['HealthCheckRequest'])
HealthCheckResponse = message_factory.GetMessageClass(DESCRIPTOR.message_types_by_name['HealthCheckResponse'])
