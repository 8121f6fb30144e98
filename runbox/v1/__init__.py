"""Protocol buffer messages and gRPC stubs for runbox.v1.

``runbox.proto`` is compiled by grpcio-tools when this package is first
imported.
"""

import grpc

runbox_pb2, runbox_pb2_grpc = grpc.protos_and_services("runbox/v1/runbox.proto")

__all__ = ["runbox_pb2", "runbox_pb2_grpc"]
