"""Stand-in for qemu-img: ``create -f qcow2 PATH SIZE`` and ``info --output=json PATH``.

The "image" is the qcow2 magic followed by the virtual size (8 bytes, big
endian), which is all ``info`` needs to answer.

FAKE_QEMU_IMG_FAIL=1 makes every invocation fail with a message on stderr.
"""

import json
import os
import sys
from pathlib import Path

_MAGIC = b"QFI\xfb"
_UNITS = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def _parse_size(text: str) -> int:
    unit = text[-1].upper()
    if unit in _UNITS:
        return int(text[:-1]) * _UNITS[unit]
    return int(text)


def main(argv: list[str]) -> int:
    if os.environ.get("FAKE_QEMU_IMG_FAIL"):
        print("qemu-img: simulated failure: No space left on device", file=sys.stderr)
        return 1

    if argv[:1] == ["create"]:
        # create -f qcow2 PATH SIZE
        path, size = Path(argv[3]), _parse_size(argv[4])
        if not path.parent.is_dir():
            print(f"qemu-img: {path}: Could not create '{path}': No such file or directory", file=sys.stderr)
            return 1
        path.write_bytes(_MAGIC + size.to_bytes(8, "big"))
        print(f"Formatting '{path}', fmt=qcow2 size={size}")
        return 0

    if argv[:1] == ["info"]:
        path = Path(argv[-1])
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            print(f"qemu-img: Could not open '{path}': No such file or directory", file=sys.stderr)
            return 1
        if not data.startswith(_MAGIC):
            print(f"qemu-img: Could not open '{path}': Image is not in qcow2 format", file=sys.stderr)
            return 1
        size = int.from_bytes(data[4:12], "big")
        print(json.dumps({"virtual-size": size, "filename": str(path), "format": "qcow2"}))
        return 0

    print(f"qemu-img: unsupported command: {argv}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
