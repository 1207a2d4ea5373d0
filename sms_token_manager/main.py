"""
SMS Token Manager Main Entry
短信Token管理服务启动入口

启动顺序：建表 -> 恢复Token状态并处理启动链接 -> 运行HTTP服务。
收到 SIGINT/SIGTERM 后停止HTTP服务，关闭短信服务客户端和数据库连接。
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from .config import SERVER_HOST, SERVER_PORT, LOG_LEVEL
from .models import init_database, close_database
from .server import app, get_sms_app

# 配置日志
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)


class SmsTokenManagerService:
    """
    短信Token管理服务

    持有uvicorn服务实例，负责启动前的状态恢复和退出时的资源释放
    """

    def __init__(
        self,
        host: str = SERVER_HOST,
        port: int = SERVER_PORT,
        launch_url: Optional[str] = None
    ):
        self.host = host
        self.port = port
        self.launch_url = launch_url

        self._server: Optional[uvicorn.Server] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _build_server(self) -> uvicorn.Server:
        config = uvicorn.Config(
            app=app,
            host=self.host,
            port=self.port,
            log_level=LOG_LEVEL.lower(),
            access_log=True
        )
        return uvicorn.Server(config)

    async def start(self) -> None:
        """恢复Token状态并运行HTTP服务，直到收到退出信号"""
        if self._running:
            logger.warning("SmsTokenManagerService已经启动，忽略重复启动")
            return

        logger.info(f"SMS Token Manager 启动: http://{self.host}:{self.port}")
        self._running = True

        try:
            init_database()

            sms_app = get_sms_app()
            result = await sms_app.start(self.launch_url)
            logger.info(f"Token状态: {sms_app.current_state().value} ({result.message})")

            self._server = self._build_server()
            await self._server.serve()
        except Exception as e:
            logger.error(f"SMS Token Manager 运行失败: {str(e)}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """停止服务并释放资源，可重复调用"""
        if not self._running:
            return
        self._running = False

        if self._server is not None:
            self._server.should_exit = True

        await get_sms_app().manager.close()
        close_database()
        logger.info("SMS Token Manager 已停止")

    def request_exit(self, sig: signal.Signals) -> None:
        logger.info(f"收到{sig.name}，正在退出...")
        if self._server is not None:
            self._server.should_exit = True

    def install_signal_handlers(self) -> None:
        """注册退出信号，Windows上退回到 signal.signal"""
        if sys.platform == "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, lambda signum, frame: self.request_exit(signal.Signals(signum)))
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_exit, sig)


async def run_server(
    host: str = SERVER_HOST,
    port: int = SERVER_PORT,
    launch_url: Optional[str] = None
) -> None:
    """
    运行短信Token管理服务

    Args:
        host: 监听地址
        port: 监听端口
        launch_url: 启动时要处理的深度链接（冷启动）
    """
    service = SmsTokenManagerService(host=host, port=port, launch_url=launch_url)
    service.install_signal_handlers()
    await service.start()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sms-token-manager",
        description="SMS Token Manager - 短信注册Token管理服务",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  sms-token-manager
  sms-token-manager --port 8888 --log-level DEBUG
  sms-token-manager --launch-url "smsapp://rewardslink?destination=Main"
        """
    )
    parser.add_argument("--host", default=SERVER_HOST, help=f"监听地址，默认 {SERVER_HOST}")
    parser.add_argument("--port", type=int, default=SERVER_PORT, help=f"监听端口，默认 {SERVER_PORT}")
    parser.add_argument("--launch-url", default=None, help="启动时处理的深度链接")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=LOG_LEVEL.upper(),
        help=f"日志级别，默认 {LOG_LEVEL.upper()}"
    )
    return parser


def main(argv=None):
    """命令行入口"""
    args = build_arg_parser().parse_args(argv)
    logging.getLogger().setLevel(args.log_level)

    try:
        asyncio.run(run_server(host=args.host, port=args.port, launch_url=args.launch_url))
    except KeyboardInterrupt:
        logger.info("用户中断，退出")
    except Exception as e:
        logger.error(f"SMS Token Manager 异常退出: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
