"""HTTP benchmark for the cached article listing.

Each listing endpoint is measured three ways: cold (right after a write
flushed the cache), warm (served from the cache) and revalidated (the
client sends the ETag back and gets a 304).
"""
import argparse
import asyncio
import statistics
import time

import httpx

BASE_URL = "http://localhost:8000"

ENDPOINTS = [
    ("GET /articles", "/articles"),
    ("GET /articles?page=2&per_page=50", "/articles?page=2&per_page=50"),
    ("GET /articles/1", "/articles/1"),
    ("GET /articles/search?q=redis", "/articles/search?q=redis"),
    ("GET /metrics", "/metrics"),
]


def _summary(name: str, times: list[float], errors: int, not_modified: int = 0) -> dict:
    if not times:
        return {"name": name, "error": "all requests failed"}
    ordered = sorted(times)
    return {
        "name": name,
        "avg_ms": round(statistics.mean(times), 2),
        "p50_ms": round(ordered[len(ordered) // 2], 2),
        "p95_ms": round(ordered[int(len(ordered) * 0.95)], 2),
        "max_ms": round(ordered[-1], 2),
        "not_modified": not_modified,
        "errors": errors,
    }


async def _timed_get(client: httpx.AsyncClient, path: str, headers: dict | None = None):
    start = time.perf_counter()
    resp = await client.get(f"{BASE_URL}{path}", headers=headers)
    return resp, (time.perf_counter() - start) * 1000


async def benchmark_endpoint(client: httpx.AsyncClient, name: str, path: str, iterations: int) -> list[dict]:
    warm, revalidated = [], []
    warm_errors = revalidate_errors = not_modified = 0
    etag = None

    for _ in range(iterations):
        try:
            resp, elapsed = await _timed_get(client, path)
        except httpx.HTTPError:
            warm_errors += 1
            continue
        if resp.status_code != 200:
            warm_errors += 1
            continue
        warm.append(elapsed)
        etag = resp.headers.get("ETag", etag)

    results = [_summary(f"{name} (warm)", warm, warm_errors)]
    if etag is None:
        return results

    for _ in range(iterations):
        try:
            resp, elapsed = await _timed_get(client, path, {"If-None-Match": etag})
        except httpx.HTTPError:
            revalidate_errors += 1
            continue
        if resp.status_code == 304:
            not_modified += 1
        revalidated.append(elapsed)

    results.append(_summary(f"{name} (If-None-Match)", revalidated, revalidate_errors, not_modified))
    return results


async def cold_listing(client: httpx.AsyncClient, iterations: int) -> dict:
    """Time the first listing request after a comment write flushed the cache."""
    times, errors = [], 0
    for i in range(iterations):
        try:
            write = await client.post(
                f"{BASE_URL}/articles/1/comments",
                json={"content": f"benchmark comment {i}", "user_id": 1},
            )
            if write.status_code != 201:
                errors += 1
                continue
            resp, elapsed = await _timed_get(client, "/articles")
        except httpx.HTTPError:
            errors += 1
            continue
        if resp.status_code == 200:
            times.append(elapsed)
        else:
            errors += 1
    return _summary("GET /articles (cold, after write)", times, errors)


async def run_benchmark(iterations: int = 50, with_writes: bool = False):
    print("=" * 80)
    print(f"Content API Benchmark — {iterations} iterations per endpoint")
    print(f"Target: {BASE_URL}")
    print("=" * 80)

    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"ERROR: Cannot connect to {BASE_URL} — {e}")
            return
        if resp.status_code != 200:
            print(f"ERROR: Health check failed ({resp.status_code})")
            return
        print(f"Health: {resp.json()}")

        results = []
        if with_writes:
            results.append(await cold_listing(client, iterations))
        for name, path in ENDPOINTS:
            results.extend(await benchmark_endpoint(client, name, path, iterations))

        cache = (await client.get(f"{BASE_URL}/metrics")).json().get("cache_info", {})

    print()
    print(f"{'Endpoint':<52} {'Avg':>8} {'P50':>8} {'P95':>8} {'304':>5} {'Err':>4}")
    print("-" * 90)
    for result in results:
        if "error" in result:
            print(f"{result['name']:<52} {'ERROR':>8}")
            continue
        print(
            f"{result['name']:<52} "
            f"{result['avg_ms']:>7.1f}ms "
            f"{result['p50_ms']:>7.1f}ms "
            f"{result['p95_ms']:>7.1f}ms "
            f"{result['not_modified']:>5} "
            f"{result['errors']:>4}"
        )
    print("-" * 90)
    print(f"Listing cache: {cache}")


def main():
    global BASE_URL
    parser = argparse.ArgumentParser(description="Benchmark the content API")
    parser.add_argument("-n", "--iterations", type=int, default=50, help="Iterations per endpoint")
    parser.add_argument("--base-url", default=BASE_URL, help="API base URL")
    parser.add_argument(
        "--with-writes",
        action="store_true",
        help="Also time cold listings by posting a comment before each request",
    )
    args = parser.parse_args()

    BASE_URL = args.base_url
    asyncio.run(run_benchmark(args.iterations, args.with_writes))


if __name__ == "__main__":
    main()
