# mgnx

Building blocks for a self-hosted BitTorrent indexer: a bencode codec, a client
that downloads torrent metadata from peers, a UDP tracker scrape client, an
in-process metrics recorder with an HTTP exposition endpoint, liveness and
readiness endpoints, a small thread-safe cache and a client for a VPN gateway's
public IP endpoint.

The package uses only the Python standard library.

## Modules

| Module | Purpose |
| --- | --- |
| `mgnx.logger` | JSON logging to standard output, level parsing and a per-context current logger |
| `mgnx.recorder` | Counters, gauges and histograms, a `Registry` that renders them as text, and a `Recorder` with one method per application event |
| `mgnx.metrics_server` | `MetricsServer`, an HTTP server answering `GET /metrics` |
| `mgnx.health` | `HealthServer`, an HTTP server answering `/liveness` and `/readiness` |
| `mgnx.gluetun_client` | `GluetunClient`, which fetches and decodes the gateway's public IP JSON |
| `mgnx.cache` | `Cache`, a locked dictionary that can evict entries on a timer |
| `mgnx.bencode` | `encode`, `decode` and `decode_prefix` |
| `mgnx.metadata` | `MetadataClient` (ut_metadata over the extension protocol), handshake and message helpers, `decode_info` |
| `mgnx.scrape_client` | `ScrapeClient`, a batched connect-and-scrape UDP tracker client, and `parse_udp_addr` |

## Examples

Bencode:

```python
from mgnx import bencode

data = bencode.encode({"b": 1, "a": [b"x", "y"]})
# b'd1:al1:x1:ye1:bi1ee'   (keys are sorted)
bencode.decode(data)
# {'a': [b'x', b'y'], 'b': 1}   (strings come back as bytes, keys as str)
```

Info dictionaries:

```python
from mgnx import bencode
from mgnx.metadata import decode_info

raw = bencode.encode({"name": "ubuntu.iso", "length": 734003200, "piece length": 524288})
info = decode_info(raw)
info.name         # 'ubuntu.iso'
info.total_size   # 734003200
info.files        # [FileInfo(path='ubuntu.iso', size=734003200)]
```

Fetching metadata from a peer. `fetch` raises `MetadataError` on any failure,
including a SHA-1 mismatch between the downloaded metadata and the infohash:

```python
from mgnx.metadata import MetadataClient

client = MetadataClient(max_msg_size=1 << 20, max_metadata_size=10 << 20)
info = client.fetch(bytes.fromhex("bddb5ff04822e617d62c503e9087a4ec2b318862"),
                    ("192.0.2.10", 6881), timeout=6.0)
```

Scraping UDP trackers. URLs that are not `udp://` are skipped; trackers are
tried in random order and the first one reporting seeders wins:

```python
from mgnx.scrape_client import ScrapeClient, parse_udp_addr

parse_udp_addr("udp://tracker.example.com:6969/announce")   # 'tracker.example.com:6969'

client = ScrapeClient(3.0, 3.0, "udp://tracker.example.com:6969/announce")
results = client.scrape(["bddb5ff04822e617d62c503e9087a4ec2b318862"])
# [ScrapeResult(infohash=..., seeders=..., leechers=..., complete=...)]
```

Metrics. A `Recorder` built without a registry does nothing; with one, every
metric is registered and can be served:

```python
import threading
from mgnx.recorder import Recorder, Registry
from mgnx.metrics_server import MetricsServer

Recorder.no_op().inc_torznab_requests_total()   # does nothing

registry = Registry()
rec = Recorder(registry)
rec.inc_metadata_fetch_failed_total("connect")
print(registry.render())   # includes mgnx_metadata_fetch_failed_total{reason="connect"} 1

stop = threading.Event()
MetricsServer(9090, registry).start(stop)   # blocks until stop is set
```

Readiness. The pool needs a `ping(timeout)` method that raises on failure, the
crawler a `node_count()` method:

```python
from mgnx.health import HealthServer

server = HealthServer(8081)
server.check()
# HealthCheck(ok=False, reasons=['db not initialized', 'crawler not initialized'])
```

Caching with periodic eviction:

```python
import threading
from mgnx.cache import Cache

cache = Cache(cleanup_interval=60, cleanup_func=lambda key, value: value is None)
cache.set("a", 1)
cache.get("a")   # 1
stop = threading.Event()
cache.start_cleanup(stop)   # background thread until stop is set
```

Logging:

```python
from mgnx.logger import current_logger, level_from_string, new_logger, use_logger

level_from_string("DEBUG")   # logging.DEBUG
level_from_string("bogus")   # logging.INFO

with use_logger(new_logger("info")):
    current_logger().info("started", extra={"port": 9090})
```

Gateway public IP:

```python
from mgnx.gluetun_client import GluetunClient

response = GluetunClient("http://localhost:8000/v1/publicip/ip").fetch_public_ip(timeout=5)
response.ip   # an ipaddress object, or None if public_ip is not an address
```

## What this package does not do

There is no command-line program and no indexer that ties the pieces
together: the package does not crawl the DHT, store torrents in a database,
classify releases, run a search service or serve a Torznab API. It has no
watcher for forwarded-port or IP files. The `Recorder` carries metric names for
those activities, but nothing in the package records them on its own.

## Running the tests

Install the `test` extra and run `pytest` from the project root.