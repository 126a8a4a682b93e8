"""
Kubelet gRPC APIs, compiled from the bundled .proto files at import time.
"""

import grpc

dra_pb2, dra_pb2_grpc = grpc.protos_and_services("computedomain_dra/proto/dra.proto")
registration_pb2, registration_pb2_grpc = grpc.protos_and_services(
    "computedomain_dra/proto/pluginregistration.proto"
)
