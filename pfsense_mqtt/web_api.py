from fastapi import FastAPI
import time, logging

log = logging.getLogger("WebAPI")


def create_app(sync):
    """
    Read-only status API for the bridge.
    """
    app = FastAPI(
        title="pfSense MQTT Bridge",
        description="Status of the firewall rules exposed as Home Assistant switches.",
        version="1.0.0",
    )
    start_time = time.time()

    @app.get("/status", tags=["default"])
    async def status():
        rules = [
            {"descr": rule_id, "unique_id": sync.registry.lookup(rule_id)}
            for rule_id in sync.managed_rules()
        ]
        return {"rules": rules}

    @app.get("/health", tags=["default"])
    async def health():
        refresh = sync.refresh_task
        refresh_running = refresh is not None and not refresh.done()
        return {
            "system": "pfsense-mqtt",
            "uptime_sec": round(time.time() - start_time, 1),
            "overall_status": "OK" if sync.connected else "DEGRADED",
            "mqtt_connected": sync.connected,
            "republish_count": sync.republish_count,
            "refresh_running": refresh_running,
        }

    return app
