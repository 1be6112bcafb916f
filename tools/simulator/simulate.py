#!/usr/bin/env python3
"""Tracking engine device simulator.

Registers simulated GPS trackers through the admin API, then streams
position frames to the socket listener the way real hardware does.

Usage:
    # 5 trackers driving around Chennai for 10 minutes over TCP
    python -m tools.simulator.simulate --server http://localhost:8000 --devices 5 --duration 600

    # UDP, CSV frames, one report every 2 seconds
    python -m tools.simulator.simulate --transport udp --format csv --interval 2

    # Inbound SMS reports through the webhook instead of the socket listener
    python -m tools.simulator.simulate --transport sms --devices 2
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx


@dataclass
class SimDevice:
    device_id: str
    sim_number: str
    lat: float
    lon: float
    bearing: float
    speed_kmh: float
    frames_sent: int = 0
    errors: int = 0


def _ddmm(value: float, positive: str, negative: str, degree_digits: int) -> str:
    """Decimal degrees to the ``dddmm.mmmmH`` form trackers send."""
    hemisphere = positive if value >= 0 else negative
    value = abs(value)
    degrees = int(value)
    minutes = (value - degrees) * 60
    return f"{degrees:0{degree_digits}d}{minutes:07.4f}{hemisphere}"


def tk103_frame(device: SimDevice, now: datetime) -> str:
    return (
        f"({device.device_id},BR00,{now:%d%m%y},A,"
        f"{_ddmm(device.lat, 'N', 'S', 2)},{_ddmm(device.lon, 'E', 'W', 3)},"
        f"{device.speed_kmh:.1f},{now:%H%M%S},{device.bearing:.2f})"
    )


def csv_frame(device: SimDevice, now: datetime) -> str:
    return (
        f"{device.device_id},{device.lat:.6f},{device.lon:.6f},"
        f"{device.speed_kmh:.1f},{device.bearing:.1f},{random.randint(3, 15)}"
    )


def sms_report(device: SimDevice, now: datetime) -> str:
    return (
        f"Lat:{device.lat:.6f},Lon:{device.lon:.6f},"
        f"Speed:{device.speed_kmh:.0f}km/h,T:{now:%Y-%m-%d %H:%M:%S}"
    )


FRAME_FORMATS = {"tk103": tk103_frame, "csv": csv_frame}


def move_device(device: SimDevice, dt_seconds: float) -> None:
    """Move a device along its current bearing, with random turns."""
    device.bearing = (device.bearing + random.uniform(-15, 15)) % 360

    # City driving: 10-60 km/h
    device.speed_kmh = max(10.0, min(60.0, device.speed_kmh + random.uniform(-4, 4)))

    distance_m = device.speed_kmh / 3.6 * dt_seconds
    bearing_rad = math.radians(device.bearing)

    # 1 degree latitude is about 111 km
    dlat = (distance_m * math.cos(bearing_rad)) / 111_000
    dlon = (distance_m * math.sin(bearing_rad)) / (111_000 * math.cos(math.radians(device.lat)))

    device.lat += dlat
    device.lon += dlon


async def register_devices(client: httpx.AsyncClient, server_url: str, devices: list[SimDevice]) -> None:
    """Register and activate each device; an existing registration is reused."""
    for device in devices:
        resp = await client.post(f"{server_url}/api/v1/devices", json={
            "device_id": device.device_id,
            "device_name": f"Simulated tracker {device.device_id[-4:]}",
            "model": "TK103",
            "sim_number": device.sim_number,
        })
        if resp.status_code not in (201, 409):
            raise SystemExit(f"could not register {device.device_id}: HTTP {resp.status_code} {resp.text}")
        await client.post(f"{server_url}/api/v1/devices/{device.device_id}/activate")


async def run_tcp_device(device: SimDevice, host: str, port: int, fmt: str,
                         interval: float, duration_seconds: float) -> None:
    """One persistent connection per device, one line per report, ack read back."""
    reader, writer = await asyncio.open_connection(host, port)
    end_time = time.monotonic() + duration_seconds
    try:
        while time.monotonic() < end_time:
            move_device(device, interval)
            frame = FRAME_FORMATS[fmt](device, datetime.now(timezone.utc))
            writer.write(frame.encode() + b"\n")
            await writer.drain()
            ack = await reader.readline()
            if ack.strip() == b"OK":
                device.frames_sent += 1
            else:
                device.errors += 1
            await asyncio.sleep(interval)
    finally:
        writer.close()
        await writer.wait_closed()


async def run_udp_device(device: SimDevice, host: str, port: int, fmt: str,
                         interval: float, duration_seconds: float) -> None:
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(asyncio.DatagramProtocol, remote_addr=(host, port))
    end_time = time.monotonic() + duration_seconds
    try:
        while time.monotonic() < end_time:
            move_device(device, interval)
            transport.sendto(FRAME_FORMATS[fmt](device, datetime.now(timezone.utc)).encode())
            device.frames_sent += 1
            await asyncio.sleep(interval)
    finally:
        transport.close()


async def run_sms_device(client: httpx.AsyncClient, device: SimDevice, server_url: str,
                         interval: float, duration_seconds: float) -> None:
    """Post periodic reports to the inbound SMS webhook, as a gateway would."""
    end_time = time.monotonic() + duration_seconds
    while time.monotonic() < end_time:
        move_device(device, interval)
        try:
            resp = await client.post(f"{server_url}/api/v1/sms/inbound", json={
                "from": device.sim_number,
                "body": sms_report(device, datetime.now(timezone.utc)),
            })
            if resp.status_code == 200 and resp.json().get("result") == "ingested":
                device.frames_sent += 1
            else:
                device.errors += 1
        except httpx.RequestError:
            device.errors += 1
        await asyncio.sleep(interval)


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    center_lat, center_lon = args.center
    devices = []
    for i in range(args.devices):
        # Scatter devices within radius of center
        angle = random.uniform(0, 2 * math.pi)
        dist_km = random.uniform(0, args.radius_km)
        lat = center_lat + (dist_km / 111.0) * math.cos(angle)
        lon = center_lon + (dist_km / (111.0 * math.cos(math.radians(center_lat)))) * math.sin(angle)

        devices.append(SimDevice(
            device_id=f"{359710040000000 + random.randint(0, 9_999_999):015d}",
            sim_number=f"+9198{random.randint(0, 99_999_999):08d}",
            lat=lat,
            lon=lon,
            bearing=random.uniform(0, 360),
            speed_kmh=random.uniform(20, 40),
        ))

    print(f"Starting simulation: {args.devices} devices over {args.transport}, one report every {args.interval}s")
    print(f"  Center: {center_lat:.4f}, {center_lon:.4f}")
    print(f"  Radius: {args.radius_km} km")
    print(f"  Duration: {args.duration}s")
    print(f"  Server: {args.server}")
    if args.transport != "sms":
        print(f"  Listener: {args.listener_host}:{args.port} ({args.format})")
    print()

    start = time.monotonic()

    async with httpx.AsyncClient(timeout=10.0) as client:
        await register_devices(client, args.server, devices)

        if args.transport == "tcp":
            port = args.port or 8888
            tasks = [run_tcp_device(dev, args.listener_host, port, args.format, args.interval, args.duration)
                     for dev in devices]
        elif args.transport == "udp":
            port = args.port or 8889
            tasks = [run_udp_device(dev, args.listener_host, port, args.format, args.interval, args.duration)
                     for dev in devices]
        else:
            tasks = [run_sms_device(client, dev, args.server, args.interval, args.duration)
                     for dev in devices]
        await asyncio.gather(*tasks)

        elapsed = time.monotonic() - start
        total_frames = sum(d.frames_sent for d in devices)
        total_errors = sum(d.errors for d in devices)

        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Total reports sent: {total_frames}")
        print(f"  Total errors: {total_errors}")
        print(f"  Throughput: {total_frames / elapsed:.1f} reports/sec")

        # Check server stats
        try:
            resp = await client.get(f"{args.server}/api/v1/stats")
        except httpx.RequestError as e:
            print(f"\nCould not fetch server stats: {e}")
            return
        if resp.status_code == 200:
            stats = resp.json()
            print("\nServer stats:")
            print(f"  Frames received: {stats['frames_received']}")
            print(f"  Parse errors: {stats['parse_errors']}")
            print(f"  Samples ingested: {stats['samples_ingested']}")
            print(f"  Canonical updates: {stats['canonical_updates']}")
            print(f"  Active devices: {stats['active_devices']['by_source']}")


def main():
    parser = argparse.ArgumentParser(description="Tracking engine device simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Admin API URL")
    parser.add_argument("--transport", choices=["tcp", "udp", "sms"], default="tcp")
    parser.add_argument("--format", choices=sorted(FRAME_FORMATS), default="tk103",
                        help="Wire format for tcp/udp frames")
    parser.add_argument("--listener-host", default="127.0.0.1", help="Socket listener host")
    parser.add_argument("--port", type=int, default=0,
                        help="Socket listener port (default: 8888 tcp, 8889 udp)")
    parser.add_argument("--devices", type=int, default=5, help="Number of simulated devices")
    parser.add_argument("--duration", type=int, default=60, help="Simulation duration in seconds")
    parser.add_argument("--interval", type=float, default=10, help="Seconds between reports per device")
    parser.add_argument("--center", type=str, default="13.0827,80.2707",
                        help="Center lat,lon (default: Chennai)")
    parser.add_argument("--radius-km", type=float, default=5.0, help="Scatter radius in km")

    args = parser.parse_args()

    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
