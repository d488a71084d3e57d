import uuid
import hashlib
import platform
import psutil

def get_hardware_fingerprint(app_name: str = "URCash") -> str:
    """
    Generate a stable device id for this installation.
    Combines multiple system identifiers and hashes them so no raw
    identifier leaves the machine.
    """
    # Get MAC address (most stable identifier)
    mac = ':'.join(['{:02x}'.format((uuid.getnode() >> elements) & 0xff)
                    for elements in range(0, 2*6, 2)][::-1])

    cpu_count = str(psutil.cpu_count(logical=True))
    system = platform.system()
    machine = platform.machine()
    hostname = platform.node()

    fingerprint_data = f"{mac}|{cpu_count}|{system}|{machine}|{hostname}|{app_name}"
    return hashlib.sha256(fingerprint_data.encode()).hexdigest()[:32].upper()

def get_system_info(app_version: str) -> dict:
    """
    Collect device information sent along with first activation.
    """
    return {
        "platform": platform.system(),
        "release": platform.release(),
        "arch": platform.machine(),
        "hostname": platform.node(),
        "cpu_count": psutil.cpu_count(logical=True),
        "total_memory_gb": round(psutil.virtual_memory().total / (1024**3), 2),
        "app_version": app_version,
    }
