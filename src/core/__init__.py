# src/core/__init__.py
"""
Доменный слой (Core Domain).
Бизнес-логика заявок, механиков, чатов и платежей.

Подпакеты:
- geo: поиск механиков поблизости
- pricing: оценка стоимости и политика цен
- dispatch: создание заявок и рассылка предложений
- requests: жизненный цикл заявки
- chat: чаты заявок
- payments: учёт платежей
- maintenance: режим обслуживания
- moderation: модерация правок профиля
- notifications: fan-out событий
"""
