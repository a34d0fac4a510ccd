# antimev/monitoring.py
import time
import psutil
import socket
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
import threading
import logging

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the main application."""
    allow_reuse_address = True
    daemon_threads = True


class Monitor:
    def __init__(self, blockchain, host="127.0.0.1", port=9090):
        self.blockchain = blockchain
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        self.last_time = time.time()
        self.last_tx_count = 0

        # Isolated registry so several chains can live in one process
        self.registry = CollectorRegistry()

        self.tx_counter = Counter('antimev_transactions_total', 'Transactions executed', ['status', 'reason'], registry=self.registry)
        self.transfer_counter = Counter('antimev_pool_transfers_total', 'Accepted transfers by direction', ['direction'], registry=self.registry)
        self.cooldown_rejections = Counter('antimev_cooldown_rejections_total', 'Transfers rejected by the directional cooldown', registry=self.registry)
        self.block_height = Gauge('antimev_block_height', 'Height of the latest sealed block', registry=self.registry)
        self.direction_block = Gauge('antimev_last_direction_block', 'Block of the last recorded pool direction', ['token'], registry=self.registry)
        self.tps = Gauge('antimev_tps', 'Transactions per second', registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)
        self.tx_latency = Histogram('antimev_tx_latency_seconds', 'Time to execute a transaction', registry=self.registry)

    def start_server(self, max_retries: int = 5, retry_delay: float = 2):
        """Start the Prometheus HTTP endpoint in a daemon thread, retrying if the port is busy."""
        app = make_wsgi_app(self.registry)

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
                        time.sleep(retry_delay)
                    else:
                        logger.error(f"Failed to bind to port {self.port} after {max_retries} attempts")
                        raise
                else:
                    raise

    def stop_server(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def update(self):
        latest = self.blockchain.get_latest_block()
        self.block_height.set(latest.height)

        now = time.time()
        elapsed = now - self.last_time
        if elapsed > 0:
            tps = (self.blockchain.total_transactions - self.last_tx_count) / elapsed
            self.tps.set(tps)
        self.last_tx_count = self.blockchain.total_transactions
        self.last_time = now

        for address, token in self.blockchain.tokens.items():
            state = token.direction_state(self.blockchain.state)
            self.direction_block.labels(token=address.hex()).set(state.last_direction_block)

        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)

    def record_tx(self, status: str, reason: str, latency: float):
        self.tx_counter.labels(status=status, reason=reason or "").inc()
        self.tx_latency.observe(latency)

    def record_transfer(self, direction: str):
        self.transfer_counter.labels(direction=direction).inc()

    def record_cooldown_rejection(self):
        self.cooldown_rejections.inc()
