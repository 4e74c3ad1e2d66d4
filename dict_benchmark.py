import argparse
import concurrent.futures
import threading
import time
from statistics import mean

from dict_errors import DictError
from dict_session import DictSession


def run_command(session: DictSession, cmd: str, word: str, database: str, strategy: str):
    """Run one lookup on an open session and return (ok, seconds)."""
    t0 = time.perf_counter()
    try:
        if cmd == 'define':
            session.define(word, database)
        elif cmd == 'match':
            session.match(word, strategy, database)
        else:
            session.list_databases()
        ok = True
    except DictError:
        ok = False
    return ok, time.perf_counter() - t0


def run_benchmark(host: str, port: int, cmd: str, word: str, concurrency: int, duration_s: float,
                  database: str = '*', strategy: str = '.'):
    """Open `concurrency` sessions and keep each busy for `duration_s` seconds."""
    latencies = []
    counts = {'total': 0, 'successes': 0}
    lock = threading.Lock()
    stop_t = time.time() + duration_s

    def worker():
        try:
            session = DictSession(host, port, timeout=5.0).connect()
        except DictError:
            with lock:
                counts['total'] += 1
            return
        try:
            while time.time() < stop_t:
                ok, dt = run_command(session, cmd, word, database, strategy)
                with lock:
                    counts['total'] += 1
                    if ok:
                        counts['successes'] += 1
                        latencies.append(dt)
                if not session.connected:
                    break
        finally:
            session.close()

    with concurrent.futures.ThreadPoolExecutor(max_workers=concurrency) as ex:
        futs = [ex.submit(worker) for _ in range(concurrency)]
        for f in futs:
            f.result()
    if latencies:
        ordered = sorted(latencies)
        p50 = ordered[int(0.5 * len(ordered))]
        p95 = ordered[int(0.95 * len(ordered))]
        p99 = ordered[int(0.99 * len(ordered))]
    else:
        p50 = p95 = p99 = 0.0
    qps = counts['successes'] / duration_s if duration_s > 0 else 0.0
    return {
        'total_requests': counts['total'],
        'successes': counts['successes'],
        'qps': qps,
        'avg_latency_ms': (mean(latencies) * 1000.0) if latencies else 0.0,
        'p50_ms': p50 * 1000.0,
        'p95_ms': p95 * 1000.0,
        'p99_ms': p99 * 1000.0,
    }


if __name__ == '__main__':
    ap = argparse.ArgumentParser()
    ap.add_argument('--host', default='127.0.0.1')
    ap.add_argument('--port', type=int, required=True)
    ap.add_argument('--cmd', choices=['define', 'match', 'databases'], default='define')
    ap.add_argument('--word', default='hello')
    ap.add_argument('--db', default='*')
    ap.add_argument('--strategy', default='.')
    ap.add_argument('--concurrency', type=int, default=20)
    ap.add_argument('--duration', type=float, default=5.0)
    args = ap.parse_args()
    res = run_benchmark(args.host, args.port, args.cmd, args.word, args.concurrency, args.duration,
                        args.db, args.strategy)
    print(res)
