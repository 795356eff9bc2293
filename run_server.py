import uvicorn

if __name__ == "__main__":
    # State directory comes from CME_STATE_DIR (default ./.constraint-memory)

    print("Starting Constraint Memory API Server...")
    print("Docs available at: http://localhost:8000/docs")

    uvicorn.run(
        "constraint_memory.api.server:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
