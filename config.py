"""
Configuration module for the ComputeFlow engine.
Loads settings from environment variables or .env file.
ComputeFlow 引擎配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- Text Generation Backend ---
# --- 文本生成后端（OpenAI 兼容接口）---
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")  # OpenAI 兼容接口地址
LLM_API_KEY = os.getenv("LLM_API_KEY", "")                             # API 密钥，生产环境通过 .env 设置
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")                      # 默认文本模型

# --- Media Generation Backend ---
# --- 媒体生成后端（队列式 HTTP 接口：提交 -> 轮询状态 -> 取结果）---
MEDIA_BASE_URL = os.getenv("MEDIA_BASE_URL", "https://queue.fal.run")  # 队列接口地址
MEDIA_API_KEY = os.getenv("MEDIA_API_KEY", os.getenv("FAL_KEY", ""))   # 兼容 FAL_KEY 变量名
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "fal-ai/flux/dev")
VIDEO_MODEL = os.getenv("VIDEO_MODEL", "fal-ai/kling-video/v1/standard/image-to-video")
AUDIO_MODEL = os.getenv("AUDIO_MODEL", "fal-ai/stable-audio")
MEDIA_POLL_INTERVAL = float(os.getenv("MEDIA_POLL_INTERVAL", "1.0"))   # 状态轮询间隔（秒）
MEDIA_TIMEOUT = float(os.getenv("MEDIA_TIMEOUT", "300"))               # 单个媒体任务的总超时（秒）
MEDIA_REQUEST_TIMEOUT = float(os.getenv("MEDIA_REQUEST_TIMEOUT", "30"))  # 单次 HTTP 请求超时（秒）

# --- Graph Execution ---
# --- 图执行参数 ---
MAX_CONCURRENT_HANDLERS = int(os.getenv("MAX_CONCURRENT_HANDLERS", "4"))  # 同一层内同时调用外部后端的最大节点数

# --- Stores ---
# --- 存储（运行记录 / 图定义）---
RUN_STORE_DIR = os.path.expanduser(os.getenv("RUN_STORE_DIR", "~/.computeflow/runs"))
GRAPH_STORE_DIR = os.path.expanduser(os.getenv("GRAPH_STORE_DIR", "~/.computeflow/graphs"))

# --- HTTP Server ---
# --- HTTP 服务 ---
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8000"))
