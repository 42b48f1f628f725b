import socket
import sys
import time

SINK_HOST = '127.0.0.1'
DATA_PORT = 3431

COUNT = 5
SEND_INTERVAL = 0.5  # seconds between packets


def main():
    text = sys.argv[1] if len(sys.argv) > 1 else "hello"
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    print(f"Sending {COUNT} packets to {SINK_HOST}:{DATA_PORT}...")
    for i in range(COUNT):
        payload = f"{text},{i}".encode('utf-8')
        sock.sendto(payload, (SINK_HOST, DATA_PORT))
        print(f"[{i+1}/{COUNT}] {payload!r}")
        if i < COUNT - 1:
            time.sleep(SEND_INTERVAL)
    sock.close()
    print("Test complete.")


if __name__ == "__main__":
    main()
