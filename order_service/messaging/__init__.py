from .bus import RabbitMQProducer

__all__ = ["RabbitMQProducer"]
