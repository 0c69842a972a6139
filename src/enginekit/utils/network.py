import asyncio
import socket
import time


def pick_free_port(host="127.0.0.1"):
    """
    Ask the OS for a free TCP port on the given host.

    Args:
        host (str): Interface to bind (default: loopback).

    Returns:
        int: A port number that was free at the time of the call.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


async def wait_for_port(host, port, timeout=12.0, interval=0.2, alive=None):
    """
    Wait until a TCP port accepts connections.

    Args:
        host (str): Host to connect to.
        port (int): Port to connect to.
        timeout (float): Seconds to keep trying.
        interval (float): Delay between attempts.
        alive (callable): Optional check; when it returns False the wait
            stops early (the process behind the port has exited).

    Returns:
        bool: True once a connection succeeded, False on timeout or early exit.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if alive is not None and not alive():
            return False
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=1.0)
        except (OSError, asyncio.TimeoutError):
            await asyncio.sleep(interval)
            continue
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
    return False
