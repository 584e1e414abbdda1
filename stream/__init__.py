"""
Stream module - progress events from a run to its observer.
Stream 模块 —— 运行进度事件的发送、帧编码与重放。

Components:
  - streamer.py: ProgressStreamer (ordered event channel) and replay_run()
  - framing.py:  `event:` / `data:` text frames and the incremental FrameParser

模块组成：
  - streamer.py: ProgressStreamer（有序事件通道）与 replay_run()（断线重放）
  - framing.py:  `event:` / `data:` 文本帧编码与增量解析器 FrameParser
"""

from stream.framing import FrameParser, decode_events, encode_event, encode_stream  # 帧编解码
from stream.streamer import ProgressStreamer, replay_run                            # 事件通道与重放
