"""RQ worker process entrypoint for pipeline and analytics jobs."""

from rq import Worker

from services.pipeline_queue import ANALYTICS_QUEUE_NAME, PIPELINE_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([PIPELINE_QUEUE_NAME, ANALYTICS_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
