import logging, socket, sys, traceback

logging.basicConfig(level=logging.INFO)


def _port_in_use(bind_host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.5)
        return sock.connect_ex((bind_host, port)) == 0


def main():
    import uvicorn
    from dotenv import load_dotenv
    from market_server.config import get_settings

    load_dotenv()
    settings = get_settings()
    host = settings.API_HOST
    port = settings.API_PORT
    probe_host = "127.0.0.1" if host == "0.0.0.0" else host
    if _port_in_use(probe_host, port):
        raise RuntimeError(f"Port {port} already in use")

    print(f"Starting uvicorn on {host}:{port}...")
    uvicorn.run("market_server.app:app", host=host, port=port, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    try:
        main()
    except Exception:
        print("Exception during uvicorn.run:")
        traceback.print_exc()
        sys.exit(1)
