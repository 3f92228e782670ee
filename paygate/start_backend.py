#!/usr/bin/env python3
"""
Backend startup wrapper.
"""
import sys

print("[Backend] Starting paygate")
print("[Backend] Server: http://localhost:8000")
print()

if __name__ == "__main__":
    try:
        import uvicorn
        uvicorn.run(
            "paygate.main:app",
            host="0.0.0.0",
            port=8000,
            reload=False,
            log_level="info",
            access_log=True
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)
