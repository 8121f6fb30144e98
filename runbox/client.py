"""Minimal Python client for the runbox gRPC service."""

import grpc

from runbox.v1 import runbox_pb2_grpc


class RunboxClient:
    """An insecure channel and the generated ``RunboxService`` stub.

    Usage::

        with RunboxClient("localhost:50051") as client:
            client.stub.GetLanguages(runbox_pb2.GetLanguagesRequest())
    """

    def __init__(self, target: str = "localhost:50051"):
        self.channel = grpc.insecure_channel(target)
        self.stub = runbox_pb2_grpc.RunboxServiceStub(self.channel)

    def close(self) -> None:
        self.channel.close()

    def __enter__(self) -> "RunboxClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
