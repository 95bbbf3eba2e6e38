from __future__ import annotations

from tenant_lifecycle.services.cipher import generate_key


def main() -> None:
    print("Add this to your environment as CONNECTION_ENCRYPTION_KEY:")
    print(generate_key())


if __name__ == "__main__":
    main()
