import asyncio

from inference_server import VALID_TOKEN, InferenceServer
from replicate_client.exceptions import RetryBudgetExhausted
from replicate_client.replicate_client import Client
from replicate_client.retry import ExponentialBackoff, RetryPolicy


async def progress(prediction):
    print(f"Status changed to: {prediction.status.value}")
    if prediction.logs:
        print(f"Logs: {prediction.logs.strip()}")


async def main():
    PORT = 8000
    server = InferenceServer(processing_polls=3)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    policy = RetryPolicy(
        strategy=ExponentialBackoff(base=0.5, multiplier=2.0, jitter=0.1),
        timeout=60.0,
        maximum_interval=4.0,
        maximum_retries=10,
    )

    async with Client(
        api_token=VALID_TOKEN, base_url=f"http://localhost:{PORT}/v1/", retry_policy=policy
    ) as client:
        try:
            prediction = await client.create_prediction(
                {"text": "Alice"}, model="replicate/hello-world"
            )
            print(f"Created prediction {prediction.id} ({prediction.status.value})")

            prediction = await client.wait(prediction, on_progress=progress)
            print(f"Final status: {prediction.status.value}")
            print(f"Output: {prediction.output}")
        except RetryBudgetExhausted as e:
            print(f"Polling timed out: {e}")
        except Exception as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
