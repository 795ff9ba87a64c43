import asyncio, logging, signal, sys, threading
from dotenv import load_dotenv
from pfsense_mqtt import config as bridge_config, identity, faux_api, mqtt_bridge, rules_sync, command_handler, web_api
import uvicorn

# ───────────────────────────────────────────────────────────────
# SETUP
# ───────────────────────────────────────────────────────────────
load_dotenv()
log = logging.getLogger("pfsense-mqtt")
logging.basicConfig(level=logging.INFO)
logging.getLogger("httpx").setLevel(logging.WARNING)

# ───────────────────────────────────────────────────────────────
# INIT SERVICES
# ───────────────────────────────────────────────────────────────
def init_services(config):
    log.info("🚀 Starting pfSense MQTT bridge...")
    registry = identity.IdentityRegistry(config.uuids_file).load()
    firewall = faux_api.FauxApiClient(
        config.pfsense_host,
        config.pfsense_apikey,
        config.pfsense_apisecret,
        verify_tls=config.pfsense_verify_tls,
    )
    bridge = mqtt_bridge.MQTTBridge(
        config.host,
        config.port,
        username=config.mqtt_user,
        password=config.mqtt_pass,
        reconnect_interval=config.reconnect_interval,
    )
    sync = rules_sync.RulesSync(config, registry, firewall, bridge)
    handler = command_handler.CommandHandler(sync)
    return sync, handler

# ───────────────────────────────────────────────────────────────
# SHUTDOWN
# ───────────────────────────────────────────────────────────────
async def shutdown(sync, handler, bridge_task, cleanup=True):
    """
    Stop the refresh timer and any running announce cycle, then, on a clean
    exit, mark every rule offline.
    """
    log.info("🛑 Initiating shutdown...")
    sync.stop_refresh()
    sync.stop_republish()
    await handler.cancel_tasks()

    if cleanup and sync.connected:
        try:
            await sync.publish_unavailable()
            await asyncio.sleep(sync.config.shutdown_delay)
        except Exception as e:
            log.error(f"Error publishing unavailable state: {e}")

    sync.bridge.disconnect()
    bridge_task.cancel()
    try:
        await bridge_task
    except (asyncio.CancelledError, Exception):
        pass

    try:
        await sync.firewall.close()
    except Exception as e:
        log.error(f"Error closing FauxAPI client: {e}")

    log.info("✅ pfSense MQTT bridge shutdown complete.")

# ───────────────────────────────────────────────────────────────
# MAIN
# ───────────────────────────────────────────────────────────────
async def main():
    config = bridge_config.load_config()
    logging.getLogger().setLevel(config.log_level)
    sync, handler = init_services(config)

    if config.api_enabled:
        app = web_api.create_app(sync)

        def run_api():
            uvicorn.run(app, host="0.0.0.0", port=config.api_port, log_level="info")

        threading.Thread(target=run_api, daemon=True).start()
        log.info(f"🌐 Status API running on http://0.0.0.0:{config.api_port}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    else:
        signal.signal(signal.SIGINT, lambda s, f: loop.call_soon_threadsafe(stop_event.set))

    bridge_task = asyncio.create_task(sync.bridge.run(handler.dispatch))
    sync.start_refresh()
    stop_task = asyncio.create_task(stop_event.wait())

    await asyncio.wait({bridge_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    stop_task.cancel()

    error = None
    if bridge_task.done() and not bridge_task.cancelled():
        error = bridge_task.exception()
    if error is not None:
        log.error(f"💥 Uncaught fault in MQTT bridge: {error!r}")
        await shutdown(sync, handler, bridge_task, cleanup=False)
        return 1

    await shutdown(sync, handler, bridge_task, cleanup=True)
    return 0

# ───────────────────────────────────────────────────────────────
# ENTRY POINT
# ───────────────────────────────────────────────────────────────
def run():
    try:
        code = asyncio.run(main())
    except bridge_config.ConfigError as e:
        log.error(f"Invalid configuration: {e}")
        code = 2
    except KeyboardInterrupt:
        print("\n🧩 Manual interrupt received, shutting down...")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
