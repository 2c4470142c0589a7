"""
main.py - Trading Engine Entry Point

Orchestration only; no strategy, risk or execution logic lives here.

Module Loading Order:
1. Core (config)
2. Monitoring (logging)
3. Persistence (store)
4. Data (exchange gateway; paper fills wrap live market data)
5. Engine (ledger, risk, executor, learner, rebalancer)
6. Interfaces (operator API)

Graceful shutdown on SIGINT/SIGTERM: the engine closes its positions, ends
the session and the gateway is closed.
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from core.config import ConfigError, load_config
from core.engine import TradingEngine
from core.state import Environment
from data.exchange import CcxtExchangeGateway, ExchangeGateway, PaperExchangeGateway
from interfaces.api import build_server, create_app
from monitoring.logger import configure as logger_config, log_event
from persistence.store import Store


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_gateway(config: Dict[str, Any]) -> ExchangeGateway:
    """Live gateway in the live environment, paper fills over live market data otherwise."""
    exchange = config['exchange']
    trading = config['trading']
    market = CcxtExchangeGateway(
        exchange_id=exchange['id'],
        symbol=trading['symbol'],
        api_key=exchange.get('api_key'),
        secret=exchange.get('secret'),
        mode=exchange.get('mode', 'live'),
        timeout=float(exchange['timeout']),
        max_attempts=int(exchange['max_attempts']),
    )
    if Environment(config['environment']) == Environment.LIVE:
        return market
    return PaperExchangeGateway(
        market,
        symbol=trading['symbol'],
        initial_quote=float(trading['paper_initial_balance']),
        slippage_rate=float(exchange['paper_slippage_rate']),
        fee_rate=float(trading['fee_rate']),
    )


class TradingPlatform:
    """
    Main orchestrator: wires the modules together, starts the engine and keeps
    it running until a shutdown signal arrives.
    """

    def __init__(self, config: Dict[str, Any], serve_api: bool = True):
        self.config = config
        self.serve_api = serve_api
        self.shutdown_event: Optional[asyncio.Event] = None

        self.store: Optional[Store] = None
        self.gateway: Optional[ExchangeGateway] = None
        self.engine: Optional[TradingEngine] = None
        self.server = None

    async def setup(self) -> None:
        monitoring = self.config['monitoring']
        logger_config(level=monitoring['log_level'], log_file=monitoring.get('log_file'))

        self.store = Store(self.config['database']['url'])
        logger.info(f"[SETUP] store: {self.store!r}")

        self.gateway = build_gateway(self.config)
        logger.info(f"[SETUP] gateway: {self.gateway!r} ({self.config['environment']})")

        self.engine = TradingEngine(self.config, self.store, self.gateway)

        if self.serve_api:
            api = self.config['api']
            self.server = build_server(create_app(self.engine, self.store), api['host'], int(api['port']))
            logger.info(f"[SETUP] operator API on {api['host']}:{api['port']}")

    def request_shutdown(self) -> None:
        logger.info("[SHUTDOWN] requested")
        if self.shutdown_event is not None:
            self.shutdown_event.set()

    async def run(self) -> None:
        self.shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: self.request_shutdown())

        server_task = None
        try:
            await self.setup()
            result = await self.engine.start()
            if not result.get('success'):
                logger.error(f"[ENGINE] start failed: {result.get('reason')}")
                return
            log_event('platform.started', {'session_id': result.get('session_id'),
                                           'environment': self.config['environment']})

            waiters = [asyncio.ensure_future(self.shutdown_event.wait())]
            if self.server is not None:
                server_task = asyncio.ensure_future(self.server.serve())
                waiters.append(server_task)
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except Exception as e:
            logger.error(f"Fatal error: {e}", exc_info=True)
        finally:
            if self.server is not None:
                self.server.should_exit = True
            if server_task is not None:
                await asyncio.gather(server_task, return_exceptions=True)
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("[SHUTDOWN] stopping engine")
        try:
            if self.engine is not None and self.engine.state.session_id is not None:
                result = await self.engine.stop()
                logger.info(f"[SHUTDOWN] engine stopped: {result}")
        except Exception as e:
            logger.error(f"Error stopping engine: {e}", exc_info=True)
        finally:
            if self.gateway is not None:
                await self.gateway.close()
            if self.store is not None:
                self.store.dispose()
            logger.info("[SHUTDOWN] complete")


async def run_platform(config: Dict[str, Any], serve_api: bool = True) -> None:
    await TradingPlatform(config, serve_api=serve_api).run()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Multi-strategy trading engine")
    parser.add_argument('-c', '--config', default='core/config.yaml', help='Path to config YAML')
    parser.add_argument('-e', '--environment', choices=['paper', 'live'], help='Override environment')
    parser.add_argument('--symbol', help='Override trading symbol')
    parser.add_argument('--log-level', dest='log_level', help='Override log level (DEBUG/INFO/WARNING/ERROR)')
    parser.add_argument('--no-api', dest='no_api', action='store_true', help='Do not serve the operator API')
    args = parser.parse_args()

    overrides: Dict[str, Any] = {}
    if args.environment:
        overrides['environment'] = args.environment
    if args.symbol:
        overrides['trading'] = {'symbol': args.symbol}
    if args.log_level:
        overrides['monitoring'] = {'log_level': args.log_level}

    try:
        config = load_config(args.config, overrides)
        asyncio.run(run_platform(config, serve_api=not args.no_api))
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Shutdown via keyboard interrupt")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error in main: {e}", exc_info=True)
        sys.exit(1)
