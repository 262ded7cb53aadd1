"""py_test_containers.engine - Container engine API access."""

from py_test_containers.engine.client import EngineClient, split_image_reference
from py_test_containers.engine.logs import LogFrameDemuxer, encode_frame

__all__ = ["EngineClient", "LogFrameDemuxer", "encode_frame", "split_image_reference"]
