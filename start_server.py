"""
coinpulse API 启动脚本
端口被占用时向后扫描可用端口
"""
import logging
import os
import socket
import sys
import traceback

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)
logger = logging.getLogger(__name__)


def _port_in_use(bind_host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.5)
        return sock.connect_ex((bind_host, port)) == 0


def _pick_port(host: str, requested_port: int) -> int:
    if not _port_in_use(host, requested_port):
        return requested_port
    try:
        scan = int(os.getenv("API_PORT_SCAN_RANGE", "10").strip() or "10")
    except ValueError:
        scan = 10
    for offset in range(1, max(1, scan) + 1):
        candidate = requested_port + offset
        if not _port_in_use(host, candidate):
            logger.warning(f"Port {requested_port} in use, fallback to {candidate}")
            return candidate
    raise RuntimeError(f"Port {requested_port} already in use")


def main():
    import uvicorn

    host = os.getenv("API_HOST", "127.0.0.1").strip() or "127.0.0.1"
    try:
        requested_port = int(os.getenv("API_PORT", "").strip() or "8000")
    except ValueError:
        requested_port = 8000

    try:
        port = _pick_port(host, requested_port)
        logger.info(f"Starting uvicorn on {host}:{port} ...")
        uvicorn.run("coinpulse.app:app", host=host, port=port, log_level="info")
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.error("Exception during uvicorn.run")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
