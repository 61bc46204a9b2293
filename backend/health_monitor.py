import logging
import os
import time
from typing import Dict, Tuple

import psycopg2
import redis
import requests

import config

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("HealthMonitor")


BACKEND_API_URL = os.getenv("BACKEND_API_URL", "http://backend-api:8000")
CHECK_INTERVAL = int(os.getenv("HEALTH_CHECK_INTERVAL", "60"))


def check_http_service(name: str, url: str, timeout: float = 5.0) -> Tuple[bool, str]:
    try:
        resp = requests.get(url, timeout=timeout)
        if resp.ok:
            return True, f"{name}: OK ({resp.status_code})"
        return False, f"{name}: FAIL ({resp.status_code})"
    except requests.RequestException as e:
        return False, f"{name}: ERROR ({e})"


def check_backend_api() -> Tuple[bool, str]:
    return check_http_service("backend-api /health", f"{BACKEND_API_URL}/health")


def check_cache_via_api() -> Tuple[bool, str]:
    try:
        resp = requests.get(f"{BACKEND_API_URL}/cache/info", timeout=5.0)
        if not resp.ok:
            return False, f"backend-api /cache/info: FAIL ({resp.status_code})"
        cache_status = resp.json().get("status")
    except (requests.RequestException, ValueError) as e:
        return False, f"backend-api /cache/info: ERROR ({e})"
    return cache_status == "available", f"backend-api cache: {cache_status}"


def check_database() -> Tuple[bool, str]:
    if not config.DATABASE_URL.startswith("postgres"):
        return True, "database: SKIPPED (not postgres)"
    try:
        conn = psycopg2.connect(config.DATABASE_URL)
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        conn.close()
        return True, "postgres: OK"
    except psycopg2.Error as e:
        return False, f"postgres: ERROR ({e})"


def check_redis() -> Tuple[bool, str]:
    if not config.REDIS_ENABLED:
        return True, "redis: SKIPPED (disabled)"
    try:
        r = redis.Redis(host=config.REDIS_HOST, port=config.REDIS_PORT, decode_responses=True,
                        socket_connect_timeout=5)
        r.ping()
        return True, "redis: OK"
    except redis.RedisError as e:
        return False, f"redis: ERROR ({e})"


def monitor_all_services() -> Dict[str, bool]:
    checks = {
        "backend_api": check_backend_api,
        "cache_via_api": check_cache_via_api,
        "database": check_database,
        "redis": check_redis,
    }

    results: Dict[str, bool] = {}
    logger.info("=" * 60)
    logger.info("Health check results:")

    for name, func in checks.items():
        ok, message = func()
        results[name] = ok
        if ok:
            logger.info(f"[OK ] {message}")
        else:
            logger.warning(f"[FAIL] {message}")

    logger.info("=" * 60)
    return results


if __name__ == "__main__":
    logger.info("Health monitor started, first check in 15 seconds")
    time.sleep(15)

    while True:
        try:
            monitor_all_services()
        except Exception as e:
            logger.error(f"Error during monitoring: {e}")
        logger.info(f"Next check in {CHECK_INTERVAL} seconds...")
        time.sleep(CHECK_INTERVAL)
