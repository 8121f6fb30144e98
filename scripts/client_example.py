#!/usr/bin/env python3
"""Example Python gRPC client for the runbox service.

Usage:
    uv run python scripts/client_example.py

Requires the gRPC server to be running (python -m runbox.grpc_server).
"""

import tempfile
import uuid
from pathlib import Path

from runbox.client import RunboxClient
from runbox.v1 import runbox_pb2


def main():
    with RunboxClient("localhost:50051") as client, tempfile.TemporaryDirectory() as workspace:
        stub = client.stub
        print("=== runbox gRPC Client Test ===\n")

        print("Checking Docker connection...")
        response = stub.CheckConnection(runbox_pb2.CheckConnectionRequest())
        if not response.success:
            print(f"  Docker unavailable ({response.cause}): {response.error}")
            return
        print(f"  Docker {response.info.version} at {response.info.endpoint}")

        print("\nSupported languages...")
        print(f"  {list(stub.GetLanguages(runbox_pb2.GetLanguagesRequest()).languages)}")

        print("\nEnsuring python:3.11-slim...")
        for event in stub.EnsureImage(runbox_pb2.ImageRequest(image="python:3.11-slim")):
            if event.HasField("status"):
                print(f"  [pull] {event.status}")
            else:
                print(f"  Pulled: {event.result.pulled}")

        # Write and run a file
        source = Path(workspace) / "hello.py"
        source.write_text("import sys\nprint('Hello from runbox!')\nprint('to stderr', file=sys.stderr)\n")

        print("\nRunning hello.py...")
        request = runbox_pb2.RunRequest(file_path=str(source), workspace_path=workspace, language="python")
        for event in stub.RunStream(request):
            kind = event.WhichOneof("event")
            if kind == "status":
                print(f"  [progress] {event.status}")
            elif kind == "output":
                print(f"  [{event.output.stream}] {event.output.data!r}")
            else:
                print(f"  Exit code: {event.result.exit_code}")
                print(f"  Duration: {event.result.duration:.2f}s")

        # Interactive shell
        shell_id = str(uuid.uuid4())
        print(f"\nStarting shell {shell_id}...")
        response = stub.StartShell(
            runbox_pb2.StartShellRequest(shell_id=shell_id, language="bash", workspace_path=workspace)
        )
        print(f"  Success: {response.success}")

        try:
            stub.WriteShell(runbox_pb2.WriteShellRequest(shell_id=shell_id, data="ls /workspace", newline=True))
            stub.WriteShell(runbox_pb2.WriteShellRequest(shell_id=shell_id, data="exit", newline=True))
            for message in stub.ShellMessages(runbox_pb2.ShellRequest(shell_id=shell_id)):
                print(f"  [{message.type}] {message.data!r}")
        finally:
            print("\nStopping shell...")
            response = stub.StopShell(runbox_pb2.ShellRequest(shell_id=shell_id))
            print(f"  Success: {response.success}")

    print("\nDone!")


if __name__ == "__main__":
    main()
